"""透過 API 建立測試資料"""


def register_and_login(client, email='admin@example.com', username='admin'):
    client.post('/auth/register', json={
        'email': email,
        'password': 'password123',
        'username': username,
    })
    response = client.post('/auth/login', json={'email': email, 'password': 'password123'})
    return {'Authorization': f"Bearer {response.get_json()['access_token']}"}


PARENT_FIELDS = {
    'grades': 'project_id',
    'books': 'grade_id',
    'units': 'book_id',
    'lessons': 'unit_id',
}


def create_category(client, headers, stage_names=('Writing', 'Review', 'Design'), weights=None):
    """建立 category 和它的 stage 樣板,回傳 (category_id, [stage_id, ...])"""
    response = client.post('/categories', json={'name': 'Textbook'}, headers=headers)
    category_id = response.get_json()['category']['id']

    stage_ids = []
    for name in stage_names:
        response = client.post('/stages', json={'name': name}, headers=headers)
        stage_ids.append(response.get_json()['stage']['id'])

    weights = weights or [0] * len(stage_ids)
    client.put(f'/stage-templates/category/{category_id}', json={
        'templates': [
            {'stage_id': stage_id, 'order_index': i, 'weight': weight}
            for i, (stage_id, weight) in enumerate(zip(stage_ids, weights), start=1)
        ]
    }, headers=headers)
    return category_id, stage_ids


def create_project(client, headers, **fields):
    payload = {'name': 'Science Series'}
    payload.update(fields)
    response = client.post('/projects', json=payload, headers=headers)
    return response.get_json()['project']['id']


def create_node(client, headers, collection, parent_id, name, **fields):
    payload = {PARENT_FIELDS[collection]: parent_id, 'name': name}
    payload.update(fields)
    response = client.post(f'/{collection}', json=payload, headers=headers)
    return response.get_json()[collection[:-1]]['id']


def create_mixed_tree(client, headers, project_id):
    """G1 > B1 > U1 (沒有 lesson), G1 > B2 (沒有 unit)"""
    grade_id = create_node(client, headers, 'grades', project_id, 'G1')
    book1 = create_node(client, headers, 'books', grade_id, 'B1')
    unit_id = create_node(client, headers, 'units', book1, 'U1')
    book2 = create_node(client, headers, 'books', grade_id, 'B2')
    return {'grade': grade_id, 'book1': book1, 'unit': unit_id, 'book2': book2}


def user_id(client, headers):
    return client.get('/auth/me', headers=headers).get_json()['id']


def add_member(client, headers, project_id, member_id, role='member'):
    return client.post(f'/projects/{project_id}/members', json={'user_id': member_id, 'role': role},
                       headers=headers)
