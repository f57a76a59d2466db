def test_register_and_login(client):
    response = client.post('/auth/register', json={
        'email': 'writer@example.com',
        'password': 'password123',
        'username': 'writer',
    })
    assert response.status_code == 201
    assert response.get_json()['user']['email'] == 'writer@example.com'

    response = client.post('/auth/login', json={'email': 'writer@example.com', 'password': 'password123'})
    assert response.status_code == 200
    data = response.get_json()
    assert data['access_token']
    assert data['refresh_token']


def test_register_duplicate_email(client, auth_headers):
    response = client.post('/auth/register', json={
        'email': 'admin@example.com',
        'password': 'password123',
        'username': 'again',
    })
    assert response.status_code == 409


def test_register_validation(client):
    response = client.post('/auth/register', json={'email': 'nope', 'password': 'short', 'username': 'x'})
    assert response.status_code == 400
    details = response.get_json()['details']
    assert set(details) == {'email', 'password', 'username'}


def test_login_wrong_password(client, auth_headers):
    response = client.post('/auth/login', json={'email': 'admin@example.com', 'password': 'wrong-password'})
    assert response.status_code == 401
    assert response.get_json()['error'] == 'Invalid credentials'


def test_me(client, auth_headers):
    response = client.get('/auth/me', headers=auth_headers)
    assert response.status_code == 200
    assert response.get_json()['username'] == 'admin'


def test_missing_token(client):
    response = client.get('/projects')
    assert response.status_code == 401
    assert response.get_json()['error'] == 'authorization_required'


def test_invalid_token(client):
    response = client.get('/projects', headers={'Authorization': 'Bearer not-a-token'})
    assert response.status_code == 401
    assert response.get_json()['error'] == 'invalid_token'


def test_refresh(client, auth_headers):
    login = client.post('/auth/login', json={'email': 'admin@example.com', 'password': 'password123'})
    refresh_token = login.get_json()['refresh_token']

    response = client.post('/auth/refresh', headers={'Authorization': f'Bearer {refresh_token}'})

    assert response.status_code == 200
    assert response.get_json()['access_token']


def test_health(client):
    response = client.get('/health')
    assert response.status_code == 200
    assert response.get_json()['status'] == 'healthy'
    assert response.headers['X-Content-Type-Options'] == 'nosniff'


def test_unknown_route_is_json_404(client):
    response = client.get('/does-not-exist')
    assert response.status_code == 404
    assert response.get_json()['error'] == 'not_found'
