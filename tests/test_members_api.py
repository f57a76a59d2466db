from models import ProjectMember
from seed import add_member, create_project, register_and_login, user_id


def test_creator_is_project_owner(client, auth_headers):
    project_id = create_project(client, auth_headers)

    data = client.get(f'/projects/{project_id}/members', headers=auth_headers).get_json()

    assert data['total'] == 1
    assert data['members'][0]['username'] == 'admin'
    assert data['members'][0]['role'] == 'owner'


def test_add_member_notifies_new_member(client, auth_headers, other_headers):
    project_id = create_project(client, auth_headers)
    editor_id = user_id(client, other_headers)

    response = add_member(client, auth_headers, project_id, editor_id, role='admin')

    assert response.status_code == 201
    assert response.get_json()['member']['role'] == 'admin'
    notification = client.get('/api/notifications', headers=other_headers).get_json()['notifications'][0]
    assert notification['type'] == 'member_added'
    assert notification['project'] == {'id': project_id, 'name': 'Science Series'}


def test_add_member_validation(client, auth_headers, other_headers):
    project_id = create_project(client, auth_headers)
    editor_id = user_id(client, other_headers)

    response = client.post(f'/projects/{project_id}/members', json={'role': 'member'}, headers=auth_headers)
    assert response.status_code == 400
    assert response.get_json()['details']['user_id'] == ['User ID is required']

    assert add_member(client, auth_headers, project_id, 999).get_json()['error'] == 'Team member not found'
    assert add_member(client, auth_headers, project_id, editor_id, role='owner').status_code == 400
    assert add_member(client, auth_headers, project_id, editor_id, role='boss').status_code == 400
    assert add_member(client, auth_headers, 999, editor_id).status_code == 404

    assert add_member(client, auth_headers, project_id, editor_id).status_code == 201
    duplicate = add_member(client, auth_headers, project_id, editor_id)
    assert duplicate.status_code == 409
    assert duplicate.get_json()['error'] == 'User is already a member of this project'


def test_only_owners_and_admins_manage_members(client, auth_headers, other_headers):
    project_id = create_project(client, auth_headers)
    editor_id = user_id(client, other_headers)
    reviewer_headers = register_and_login(client, email='reviewer@example.com', username='reviewer')
    reviewer_id = user_id(client, reviewer_headers)

    # 不是成員
    assert add_member(client, other_headers, project_id, reviewer_id).status_code == 403

    add_member(client, auth_headers, project_id, editor_id)
    # 一般成員
    assert add_member(client, other_headers, project_id, reviewer_id).status_code == 403
    response = client.delete(f'/projects/{project_id}/members/{editor_id}', headers=other_headers)
    assert response.status_code == 403


def test_owner_cannot_be_removed(client, auth_headers):
    project_id = create_project(client, auth_headers)
    admin_id = user_id(client, auth_headers)

    response = client.delete(f'/projects/{project_id}/members/{admin_id}', headers=auth_headers)

    assert response.status_code == 400
    assert response.get_json()['error'] == 'Cannot remove the project owner'


def test_removing_member_unassigns_their_tasks(client, auth_headers, other_headers):
    project_id = create_project(client, auth_headers)
    editor_id = user_id(client, other_headers)
    add_member(client, auth_headers, project_id, editor_id)
    task_id = client.post(f'/projects/{project_id}/tasks', json={'name': 'Draft', 'assigned_to': editor_id},
                          headers=auth_headers).get_json()['task']['id']

    response = client.delete(f'/projects/{project_id}/members/{editor_id}', headers=auth_headers)

    assert response.status_code == 200
    assert response.get_json()['unassigned_tasks'] == 1
    assert client.get(f'/tasks/{task_id}', headers=auth_headers).get_json()['assigned_to'] is None
    assert client.get(f'/projects/{project_id}/members', headers=auth_headers).get_json()['total'] == 1

    assert client.delete(f'/projects/{project_id}/members/{editor_id}', headers=auth_headers).status_code == 404


def test_deleting_project_removes_members(app, client, auth_headers):
    project_id = create_project(client, auth_headers)
    client.delete(f'/projects/{project_id}', headers=auth_headers)

    with app.app_context():
        assert ProjectMember.query.filter_by(project_id=project_id).count() == 0
