import pytest

from seed import add_member, create_project, user_id


@pytest.fixture
def editor_task(client, auth_headers, other_headers):
    """editor 是成員,並負責一個任務"""
    project_id = create_project(client, auth_headers)
    editor_id = user_id(client, other_headers)
    add_member(client, auth_headers, project_id, editor_id)
    task_id = client.post(f'/projects/{project_id}/tasks', json={'name': 'Write L1', 'assigned_to': editor_id},
                          headers=auth_headers).get_json()['task']['id']
    return {'project': project_id, 'editor': editor_id, 'task': task_id}


def _flag(client, headers, member_id, flag_type='red', reason='Missed the review deadline', **fields):
    payload = {'user_id': member_id, 'flag_type': flag_type, 'reason': reason}
    payload.update(fields)
    return client.post('/api/performance-flags', json=payload, headers=headers)


def test_team_list_with_task_counts(client, auth_headers, editor_task):
    client.post(f'/projects/{editor_task["project"]}/tasks',
                json={'name': 'Done', 'assigned_to': editor_task['editor'], 'status': 'completed'},
                headers=auth_headers)

    data = client.get('/api/team', headers=auth_headers).get_json()

    assert data['total'] == 2
    members = {m['username']: m for m in data['team_members']}
    assert members['editor']['assigned_tasks'] == 2
    assert members['editor']['open_tasks'] == 1
    assert members['admin']['assigned_tasks'] == 0

    search = client.get('/api/team?search=edit', headers=auth_headers).get_json()
    assert [m['username'] for m in search['team_members']] == ['editor']


def test_deactivate_team_member(client, auth_headers, other_headers, editor_task):
    editor_id = editor_task['editor']

    response = client.patch(f'/api/team/{editor_id}', json={'is_active': False}, headers=auth_headers)
    assert response.status_code == 200
    assert response.get_json()['team_member']['is_active'] is False

    inactive = client.get('/api/team?status=inactive', headers=auth_headers).get_json()
    assert [m['id'] for m in inactive['team_members']] == [editor_id]

    login = client.post('/auth/login', json={'email': 'editor@example.com', 'password': 'password123'})
    assert login.status_code == 403


def test_cannot_deactivate_yourself(client, auth_headers):
    admin_id = user_id(client, auth_headers)

    response = client.patch(f'/api/team/{admin_id}', json={'is_active': False}, headers=auth_headers)

    assert response.status_code == 400


def test_team_member_detail(client, auth_headers, editor_task):
    _flag(client, auth_headers, editor_task['editor'], task_id=editor_task['task'])

    data = client.get(f'/api/team/{editor_task["editor"]}', headers=auth_headers).get_json()

    assert data['projects'] == [{'id': editor_task['project'], 'name': 'Science Series', 'role': 'member'}]
    assert data['tasks_by_status'] == {'not-started': 1}
    red = [s for s in data['performance_flags'] if s['flag_type'] == 'red'][0]
    assert red['count'] == 1
    assert client.get('/api/team/999', headers=auth_headers).status_code == 404


def test_create_flag_on_task(client, auth_headers, editor_task):
    response = _flag(client, auth_headers, editor_task['editor'], task_id=editor_task['task'])

    assert response.status_code == 201
    flag = response.get_json()['flag']
    assert flag['flag_type'] == 'red'
    assert flag['user']['username'] == 'editor'
    assert flag['added_by']['username'] == 'admin'
    assert flag['task']['id'] == editor_task['task']

    flags = client.get(f'/api/tasks/{editor_task["task"]}/performance-flags', headers=auth_headers).get_json()
    assert flags['total'] == 1


def test_create_flag_validation(client, auth_headers, editor_task):
    response = _flag(client, auth_headers, editor_task['editor'], flag_type='purple')
    assert response.status_code == 400
    assert 'flag_type' in response.get_json()['details']

    response = _flag(client, auth_headers, editor_task['editor'], reason='')
    assert response.get_json()['details']['reason'] == ['Reason must be 1-1000 characters']

    assert _flag(client, auth_headers, 999).get_json()['error'] == 'Team member not found'
    assert _flag(client, auth_headers, editor_task['editor'], task_id=999).status_code == 404


def test_update_and_delete_flag(client, auth_headers, editor_task):
    flag_id = _flag(client, auth_headers, editor_task['editor']).get_json()['flag']['id']

    response = client.patch(f'/api/performance-flags/{flag_id}', json={'flag_type': 'green'},
                            headers=auth_headers)
    assert response.status_code == 200
    assert response.get_json()['flag']['flag_type'] == 'green'
    assert response.get_json()['flag']['reason'] == 'Missed the review deadline'

    assert client.patch(f'/api/performance-flags/{flag_id}', json={}, headers=auth_headers).status_code == 400

    assert client.delete(f'/api/performance-flags/{flag_id}', headers=auth_headers).status_code == 200
    assert client.delete(f'/api/performance-flags/{flag_id}', headers=auth_headers).status_code == 404


def test_flag_summary_and_filter(client, auth_headers, editor_task):
    editor_id = editor_task['editor']
    _flag(client, auth_headers, editor_id, 'red')
    _flag(client, auth_headers, editor_id, 'red')
    _flag(client, auth_headers, editor_id, 'green', reason='Great layout work')

    summary = client.get(f'/api/team/{editor_id}/performance-flags/summary', headers=auth_headers).get_json()
    counts = {s['flag_type']: s['count'] for s in summary['summary']}
    assert counts == {'red': 2, 'orange': 0, 'yellow': 0, 'green': 1}
    orange = [s for s in summary['summary'] if s['flag_type'] == 'orange'][0]
    assert orange['last_flag_date'] is None

    green = client.get(f'/api/team/{editor_id}/performance-flags?flag_type=green', headers=auth_headers).get_json()
    assert [f['reason'] for f in green['flags']] == ['Great layout work']


def test_deleting_task_keeps_flag(client, auth_headers, editor_task):
    flag_id = _flag(client, auth_headers, editor_task['editor'], task_id=editor_task['task']).get_json()['flag']['id']

    client.delete(f'/tasks/{editor_task["task"]}', headers=auth_headers)

    flags = client.get(f'/api/team/{editor_task["editor"]}/performance-flags', headers=auth_headers).get_json()
    assert [(f['id'], f['task']) for f in flags['flags']] == [(flag_id, None)]
