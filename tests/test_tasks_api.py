import pytest

from seed import add_member, create_category, create_node, create_project, user_id


@pytest.fixture
def lesson_tree(client, auth_headers):
    project_id = create_project(client, auth_headers)
    grade_id = create_node(client, auth_headers, 'grades', project_id, 'Grade 1')
    book_id = create_node(client, auth_headers, 'books', grade_id, 'Book A')
    unit_id = create_node(client, auth_headers, 'units', book_id, 'Unit 2')
    lesson_id = create_node(client, auth_headers, 'lessons', unit_id, 'Lesson 5')
    return {'project': project_id, 'grade': grade_id, 'book': book_id, 'unit': unit_id, 'lesson': lesson_id}


def _create_task(client, headers, project_id, **fields):
    payload = {'name': 'Draft'}
    payload.update(fields)
    return client.post(f'/projects/{project_id}/tasks', json=payload, headers=headers)


def test_create_task_fills_ancestors_and_path(client, auth_headers, lesson_tree):
    response = _create_task(client, auth_headers, lesson_tree['project'], lesson_id=lesson_tree['lesson'])

    assert response.status_code == 201
    task = response.get_json()['task']
    assert task['grade_id'] == lesson_tree['grade']
    assert task['book_id'] == lesson_tree['book']
    assert task['unit_id'] == lesson_tree['unit']
    assert task['lesson_id'] == lesson_tree['lesson']
    assert task['component_path'] == 'Grade 1 > Book A > Unit 2 > Lesson 5'
    assert task['status'] == 'not-started'
    assert task['progress'] == 0
    assert task['completed_at'] is None


def test_create_task_keeps_explicit_component_path(client, auth_headers, lesson_tree):
    response = _create_task(client, auth_headers, lesson_tree['project'], book_id=lesson_tree['book'],
                            component_path='G1 / Book A')

    task = response.get_json()['task']
    assert task['component_path'] == 'G1 / Book A'
    assert task['grade_id'] == lesson_tree['grade']
    assert task['unit_id'] is None


def test_create_task_without_hierarchy(client, auth_headers):
    project_id = create_project(client, auth_headers)

    task = _create_task(client, auth_headers, project_id).get_json()['task']

    assert task['grade_id'] is None
    assert task['component_path'] is None


@pytest.mark.parametrize('status, progress', [
    ('in-progress', 50),
    ('under-review', 90),
    ('blocked', 25),
    ('completed', 100),
])
def test_create_task_progress_follows_status(client, auth_headers, status, progress):
    project_id = create_project(client, auth_headers)

    task = _create_task(client, auth_headers, project_id, status=status).get_json()['task']

    assert task['progress'] == progress
    assert (task['completed_at'] is not None) == (status == 'completed')


def test_create_task_rejects_node_from_another_project(client, auth_headers, lesson_tree):
    other_project = create_project(client, auth_headers, name='Other')

    response = _create_task(client, auth_headers, other_project, lesson_id=lesson_tree['lesson'])

    assert response.status_code == 400
    assert response.get_json()['error'] == 'Hierarchy node does not belong to this project'


def test_create_task_unknown_references(client, auth_headers, lesson_tree):
    project_id = lesson_tree['project']

    assert _create_task(client, auth_headers, project_id, unit_id=999).get_json()['error'] == 'Unit not found'
    assert _create_task(client, auth_headers, project_id, stage_id=999).status_code == 404
    assert _create_task(client, auth_headers, 999).status_code == 404

    response = _create_task(client, auth_headers, project_id, status='done')
    assert response.status_code == 400
    assert 'status' in response.get_json()['details']


def test_update_status_recomputes_progress(client, auth_headers):
    project_id = create_project(client, auth_headers)
    task_id = _create_task(client, auth_headers, project_id).get_json()['task']['id']

    task = client.patch(f'/tasks/{task_id}', json={'status': 'in-progress'}, headers=auth_headers).get_json()['task']
    assert task['progress'] == 50

    task = client.patch(f'/tasks/{task_id}', json={'status': 'under-review'}, headers=auth_headers).get_json()['task']
    assert task['progress'] == 90

    task = client.patch(f'/tasks/{task_id}', json={'status': 'completed'}, headers=auth_headers).get_json()['task']
    assert task['progress'] == 100
    assert task['completed_at'] is not None

    task = client.patch(f'/tasks/{task_id}', json={'status': 'in-progress'}, headers=auth_headers).get_json()['task']
    assert task['completed_at'] is None


def test_explicit_progress_overrides_status(client, auth_headers):
    project_id = create_project(client, auth_headers)
    task_id = _create_task(client, auth_headers, project_id).get_json()['task']['id']

    response = client.patch(f'/tasks/{task_id}', json={'status': 'in-progress', 'progress': 70},
                            headers=auth_headers)

    assert response.get_json()['task']['progress'] == 70

    # 只改 progress 不動 status
    response = client.patch(f'/tasks/{task_id}', json={'progress': 80}, headers=auth_headers)
    assert response.get_json()['task']['progress'] == 80
    assert response.get_json()['task']['status'] == 'in-progress'


def test_update_without_changes(client, auth_headers):
    project_id = create_project(client, auth_headers)
    task_id = _create_task(client, auth_headers, project_id).get_json()['task']['id']

    response = client.patch(f'/tasks/{task_id}', json={'name': 'Draft'}, headers=auth_headers)

    assert response.get_json()['message'] == 'No changes to update'


def test_completion_by_another_user_notifies_creator(client, auth_headers, other_headers):
    project_id = create_project(client, auth_headers)
    task_id = _create_task(client, auth_headers, project_id, name='Lesson 1 - Writing').get_json()['task']['id']

    client.patch(f'/tasks/{task_id}', json={'status': 'completed'}, headers=other_headers)

    data = client.get('/api/notifications', headers=auth_headers).get_json()
    assert data['unread_count'] == 1
    notification = data['notifications'][0]
    assert notification['type'] == 'task_completed'
    assert notification['title'] == 'editor completed a task'
    assert notification['task'] == {'id': task_id, 'name': 'Lesson 1 - Writing'}

    assert client.get('/api/notifications', headers=other_headers).get_json()['total'] == 0


def test_completing_own_task_does_not_notify(client, auth_headers):
    project_id = create_project(client, auth_headers)
    task_id = _create_task(client, auth_headers, project_id).get_json()['task']['id']

    client.patch(f'/tasks/{task_id}', json={'status': 'completed'}, headers=auth_headers)

    assert client.get('/api/notifications', headers=auth_headers).get_json()['total'] == 0


def test_list_tasks_filters_and_search(client, auth_headers, lesson_tree):
    project_id = lesson_tree['project']
    _create_task(client, auth_headers, project_id, name='Write lesson', lesson_id=lesson_tree['lesson'])
    _create_task(client, auth_headers, project_id, name='Book cover', book_id=lesson_tree['book'],
                 status='in-progress')
    _create_task(client, auth_headers, project_id, name='Kickoff', priority='high')

    def names(query):
        response = client.get(f'/projects/{project_id}/tasks?{query}', headers=auth_headers)
        return sorted(t['name'] for t in response.get_json()['tasks'])

    assert names('') == ['Book cover', 'Kickoff', 'Write lesson']
    assert names(f'book_id={lesson_tree["book"]}') == ['Book cover', 'Write lesson']
    assert names(f'lesson_id={lesson_tree["lesson"]}') == ['Write lesson']
    assert names('status=in-progress') == ['Book cover']
    assert names('priority=high') == ['Kickoff']
    # component_path 也在搜尋範圍內
    assert names('search=unit%202') == ['Write lesson']

    response = client.get(f'/projects/{project_id}/tasks?per_page=2&page=2', headers=auth_headers)
    assert response.get_json()['total'] == 3
    assert len(response.get_json()['tasks']) == 1


def test_get_and_delete_task(client, auth_headers):
    project_id = create_project(client, auth_headers)
    task_id = _create_task(client, auth_headers, project_id).get_json()['task']['id']

    assert client.get(f'/tasks/{task_id}', headers=auth_headers).get_json()['name'] == 'Draft'
    assert client.delete(f'/tasks/{task_id}', headers=auth_headers).status_code == 200
    assert client.get(f'/tasks/{task_id}', headers=auth_headers).status_code == 404


def test_changing_stage_of_generated_task(client, auth_headers):
    category_id, (writing, review) = create_category(client, auth_headers, stage_names=('Writing', 'Review'))
    project_id = create_project(client, auth_headers, category_id=category_id)
    create_node(client, auth_headers, 'grades', project_id, 'G1')
    created = client.post(f'/projects/{project_id}/bulk-create-tasks', headers=auth_headers).get_json()
    writing_task = created['created_tasks'][0]['task_id']

    response = client.patch(f'/tasks/{writing_task}', json={'stage_id': review}, headers=auth_headers)
    assert response.status_code == 409
    assert response.get_json()['error'] == 'Task already exists for this stage'

    # 刪掉 Review 任務後就可以換,之後再產生會補回 Writing
    review_task = created['created_tasks'][1]['task_id']
    client.delete(f'/tasks/{review_task}', headers=auth_headers)
    response = client.patch(f'/tasks/{writing_task}', json={'stage_id': review}, headers=auth_headers)
    assert response.status_code == 200

    again = client.post(f'/projects/{project_id}/bulk-create-tasks', headers=auth_headers).get_json()
    assert [t['stage_name'] for t in again['created_tasks']] == ['Writing']
    assert again['skipped_count'] == 1


@pytest.fixture
def team_project(client, auth_headers, other_headers):
    """admin 建立的專案,editor 是成員"""
    project_id = create_project(client, auth_headers)
    editor_id = user_id(client, other_headers)
    add_member(client, auth_headers, project_id, editor_id)
    return {'project': project_id, 'admin': user_id(client, auth_headers), 'editor': editor_id}


def test_create_task_with_assignee_notifies_assignee(client, auth_headers, other_headers, team_project):
    response = _create_task(client, auth_headers, team_project['project'], name='Write L1',
                            assigned_to=team_project['editor'])

    assert response.status_code == 201
    task = response.get_json()['task']
    assert task['assigned_to']['username'] == 'editor'

    notifications = client.get('/api/notifications?type=task_assigned', headers=other_headers).get_json()
    assert notifications['total'] == 1
    assert notifications['notifications'][0]['title'] == 'admin assigned a task to you'
    assert notifications['notifications'][0]['task'] == {'id': task['id'], 'name': 'Write L1'}


def test_assigning_yourself_does_not_notify(client, auth_headers, team_project):
    _create_task(client, auth_headers, team_project['project'], assigned_to=team_project['admin'])

    assert client.get('/api/notifications', headers=auth_headers).get_json()['total'] == 0


def test_assignee_must_be_project_member(client, auth_headers, other_headers):
    project_id = create_project(client, auth_headers)
    editor_id = user_id(client, other_headers)

    response = _create_task(client, auth_headers, project_id, assigned_to=editor_id)
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Assigned user is not a member of this project'

    assert _create_task(client, auth_headers, project_id, assigned_to=999).status_code == 404

    task_id = _create_task(client, auth_headers, project_id).get_json()['task']['id']
    response = client.patch(f'/tasks/{task_id}', json={'assigned_to': editor_id}, headers=auth_headers)
    assert response.status_code == 400


def test_reassign_and_unassign(client, auth_headers, other_headers, team_project):
    task_id = _create_task(client, auth_headers, team_project['project'],
                           assigned_to=team_project['admin']).get_json()['task']['id']

    response = client.patch(f'/tasks/{task_id}', json={'assigned_to': team_project['editor']},
                            headers=auth_headers)
    assert response.status_code == 200
    assert 'assigned_to' in response.get_json()['changes']
    assert client.get('/api/notifications?type=task_assigned', headers=other_headers).get_json()['total'] == 1

    response = client.patch(f'/tasks/{task_id}', json={'assigned_to': None}, headers=auth_headers)
    assert response.get_json()['task']['assigned_to'] is None
    # 取消指派不發通知
    assert client.get('/api/notifications?type=task_assigned', headers=other_headers).get_json()['total'] == 1


def test_completion_notifies_creator_and_assignee(client, auth_headers, other_headers, team_project):
    task_id = _create_task(client, other_headers, team_project['project'],
                           assigned_to=team_project['editor']).get_json()['task']['id']

    client.patch(f'/tasks/{task_id}', json={'status': 'completed'}, headers=auth_headers)

    completed = client.get('/api/notifications?type=task_completed', headers=other_headers).get_json()
    # editor 既是建立者也是負責人,只收到一則
    assert completed['total'] == 1
    assert client.get('/api/notifications', headers=auth_headers).get_json()['total'] == 0


def test_list_tasks_by_assignee(client, auth_headers, team_project):
    project_id = team_project['project']
    _create_task(client, auth_headers, project_id, name='Mine', assigned_to=team_project['admin'])
    _create_task(client, auth_headers, project_id, name='Theirs', assigned_to=team_project['editor'])
    _create_task(client, auth_headers, project_id, name='Open')

    def names(query):
        response = client.get(f'/projects/{project_id}/tasks?{query}', headers=auth_headers)
        return sorted(t['name'] for t in response.get_json()['tasks'])

    assert names(f'assigned_to={team_project["editor"]}') == ['Theirs']
    assert names('assigned_to=none') == ['Open']
    response = client.get(f'/projects/{project_id}/tasks?assigned_to=someone', headers=auth_headers)
    assert response.status_code == 400
