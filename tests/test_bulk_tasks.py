import re
from datetime import date, timedelta

import pytest

from bulk_tasks import (
    ALREADY_EXISTS,
    BulkTaskGenerator,
    find_lowest_units,
    generation_key,
    task_key,
)
from domain import ProjectSnapshot
from errors import ValidationError
from factories import FakeStore, book, grade, lesson, stages, task, unit

TODAY = date(2024, 3, 1)


def _project(category_id=1, end_date=None):
    return ProjectSnapshot(id=10, name='Science', category_id=category_id, end_date=end_date)


def _mixed_tree():
    # G1 > B1 > U1 (沒有 lesson), G1 > B2 (沒有 unit)
    return [grade(1, 'G1', [
        book(1, 'B1', [unit(1, 'U1')]),
        book(2, 'B2'),
    ])]


def test_task_key_normalises_nulls_and_types():
    assert task_key(1, None, None, None, 3) == ('1', '-', '-', '-', '3')
    assert task_key('1', 2, 3, 4, '5') == task_key(1, 2, 3, 4, 5)
    assert generation_key(task_key(1, None, 2, None, 3)) == '1|-|2|-|3'


def test_lowest_units_for_mixed_depths():
    units = find_lowest_units(_mixed_tree())

    assert [u.to_dict() for u in units] == [
        {'level': 'unit', 'grade_id': 1, 'book_id': 1, 'unit_id': 1, 'lesson_id': None,
         'component_path': 'G1 > B1 > U1'},
        {'level': 'book', 'grade_id': 1, 'book_id': 2, 'unit_id': None, 'lesson_id': None,
         'component_path': 'G1 > B2'},
    ]


def test_lowest_units_precedence_lessons_first():
    tree = [
        grade(1, 'G1'),
        grade(2, 'G2', [
            book(2, 'B2'),
            book(3, 'B3', [
                unit(3, 'U3'),
                unit(4, 'U4', [lesson(1, 'L1'), lesson(2, 'L2')]),
            ]),
        ]),
    ]

    units = find_lowest_units(tree)

    assert [(u.level, u.component_path) for u in units] == [
        ('lesson', 'G2 > B3 > U4 > L1'),
        ('lesson', 'G2 > B3 > U4 > L2'),
        ('unit', 'G2 > B3 > U3'),
        ('book', 'G2 > B2'),
        ('grade', 'G1'),
    ]
    assert units[0].lesson_id == 1 and units[0].unit_id == 4 and units[0].book_id == 3
    assert units[-1].book_id is None


def test_generates_one_task_per_unit_and_stage():
    store = FakeStore(stage_list=stages('Writing', 'Review', 'Design'), grades=_mixed_tree())
    generator = BulkTaskGenerator(store)

    result = generator.generate(_project(), created_by=5, today=TODAY)

    assert result.total_stages == 3
    assert result.total_units == 2
    assert result.expected == 6
    assert result.created_count == 6
    assert result.skipped_count == 0
    # 外層是單位,內層是 stage
    assert [t['name'] for t in store.inserted] == [
        'G1 > B1 > U1 - Writing',
        'G1 > B1 > U1 - Review',
        'G1 > B1 > U1 - Design',
        'G1 > B2 - Writing',
        'G1 > B2 - Review',
        'G1 > B2 - Design',
    ]


def test_second_run_creates_nothing():
    store = FakeStore(stage_list=stages('Writing', 'Review', 'Design'), grades=_mixed_tree())
    generator = BulkTaskGenerator(store)

    generator.generate(_project(), today=TODAY)
    tasks_after_first = list(store.tasks)
    second = generator.generate(_project(), today=TODAY)

    assert second.created_count == 0
    assert second.skipped_count == 6
    assert all(item['reason'] == ALREADY_EXISTS for item in second.skipped)
    assert store.tasks == tasks_after_first


def test_task_fields():
    store = FakeStore(stage_list=stages('Writing'), grades=[grade(1, 'G1', [book(2, 'B2')])])

    BulkTaskGenerator(store).generate(_project(), created_by=5, today=TODAY)

    assert store.inserted == [{
        'project_id': 10,
        'stage_id': 1,
        'grade_id': 1,
        'book_id': 2,
        'unit_id': None,
        'lesson_id': None,
        'name': 'G1 > B2 - Writing',
        'description': 'Task for G1 > B2 at Writing stage',
        'status': 'not-started',
        'priority': 'medium',
        'progress': 0,
        'start_date': TODAY,
        'end_date': TODAY + timedelta(days=30),
        'estimated_hours': 8,
        'component_path': 'G1 > B2',
        'created_by': 5,
        'generation_key': '1|2|-|-|1',
    }]


def test_project_end_date_is_used():
    store = FakeStore(stage_list=stages('Writing'), grades=[grade(1, 'G1')])

    BulkTaskGenerator(store).generate(_project(end_date=date(2024, 12, 31)), today=TODAY)

    assert store.inserted[0]['end_date'] == date(2024, 12, 31)


def test_configured_defaults():
    store = FakeStore(stage_list=stages('Writing'), grades=[grade(1, 'G1')])

    BulkTaskGenerator(store, estimated_hours=4, default_duration_days=7).generate(_project(), today=TODAY)

    assert store.inserted[0]['estimated_hours'] == 4
    assert store.inserted[0]['end_date'] == TODAY + timedelta(days=7)


def test_partial_duplicates_are_skipped():
    tree = [grade(1, 'G1', [book(1, 'B1'), book(2, 'B2')])]
    existing = [task(stage_id=2, grade_id=1, book_id=2)]
    store = FakeStore(stage_list=stages('Writing', 'Review'), grades=tree, tasks=existing)

    result = BulkTaskGenerator(store).generate(_project(), today=TODAY)

    assert result.created_count == 3
    assert result.skipped_count == 1
    assert result.created_count + result.skipped_count == result.expected == 4
    assert result.skipped[0]['name'] == 'G1 > B2 - Review'


def test_manual_task_at_different_depth_is_not_a_duplicate():
    # 掛在 grade 上的任務和掛在 book 上的任務 key 不同
    tree = [grade(1, 'G1', [book(1, 'B1')])]
    store = FakeStore(stage_list=stages('Writing'), grades=tree, tasks=[task(stage_id=1, grade_id=1)])

    result = BulkTaskGenerator(store).generate(_project(), today=TODAY)

    assert result.created_count == 1


def test_store_rejection_is_folded_into_skipped():
    tree = [grade(1, 'G1', [book(1, 'B1'), book(2, 'B2')])]
    store = FakeStore(stage_list=stages('Writing'), grades=tree, conflicting_keys={'1|1|-|-|1'})

    result = BulkTaskGenerator(store).generate(_project(), today=TODAY)

    assert result.created_count == 1
    assert result.skipped_count == 1
    assert result.skipped[0]['reason'] == ALREADY_EXISTS
    assert result.created[0]['component_path'] == 'G1 > B2'


def test_summary_dict():
    store = FakeStore(stage_list=stages('Writing'), grades=[grade(1, 'G1')])

    summary = BulkTaskGenerator(store).generate(_project(), today=TODAY).to_dict()

    assert summary['total_stages'] == 1
    assert summary['total_lowest_units'] == 1
    assert summary['expected_tasks'] == 1
    assert summary['created_count'] == 1
    assert summary['skipped_count'] == 0
    assert summary['created_tasks'][0]['task_id'] == 1
    assert summary['skipped_tasks'] == []


@pytest.mark.parametrize('project, store, message', [
    (_project(category_id=None), FakeStore(stage_list=stages('Writing'), grades=[grade(1, 'G1')]),
     'Project has no category assigned'),
    (_project(), FakeStore(stage_list=[], grades=[grade(1, 'G1')]),
     "No stages configured for this project's category"),
    (_project(), FakeStore(stage_list=stages('Writing'), grades=[]),
     'Project has no hierarchy (grades, books, units or lessons)'),
])
def test_precondition_failures(project, store, message):
    with pytest.raises(ValidationError, match=re.escape(message)):
        BulkTaskGenerator(store).generate(project, today=TODAY)
    assert store.inserted == []
