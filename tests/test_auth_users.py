from passlib.hash import pbkdf2_sha256

from app import seed_essential_data
from models import db, User
from conftest import login


class TestLogin:

    def test_login_me_logout(self, app, users):
        client = app.test_client()
        response = login(client, 'manager')
        assert response.status_code == 200
        body = response.get_json()
        assert body['user']['role'] == 'Manager'
        assert 'replacement' in body['permissions']['modules']

        assert client.get('/auth/me').get_json()['user']['username'] == 'manager'
        assert client.post('/auth/logout').status_code == 200
        assert client.get('/auth/me').status_code == 401

    def test_bad_password(self, app, users):
        response = login(app.test_client(), 'manager', 'wrong-password')
        assert response.status_code == 401
        assert response.get_json() == {'error': 'Invalid username or password'}

    def test_missing_fields(self, app):
        response = app.test_client().post('/auth/login', json={'username': 'x'})
        assert response.status_code == 400

    def test_inactive_user_cannot_login(self, app, users):
        with app.app_context():
            db.session.get(User, users['Staff']).status = 'Inactive'
            db.session.commit()
        assert login(app.test_client(), 'staff').status_code == 401


class TestUserAdmin:

    def test_admin_creates_and_updates_user(self, client_for):
        admin = client_for('Admin')
        response = admin.post('/users', json={'username': 'rafi', 'password': 'longpass', 'role': 'Staff'})
        assert response.status_code == 201
        user_id = response.get_json()['id']

        response = admin.post('/users', json={'username': 'RAFI', 'password': 'longpass', 'role': 'Staff'})
        assert response.status_code == 400
        assert 'already exists' in response.get_json()['error']

        response = admin.put(f'/users/{user_id}', json={'role': 'Manager'})
        assert response.get_json()['role'] == 'Manager'

        response = admin.put(f'/users/{user_id}', json={'role': 'Owner'})
        assert response.status_code == 400

    def test_non_admin_cannot_manage_users(self, client_for):
        response = client_for('Manager').post('/users', json={'username': 'x', 'password': 'longpass',
                                                               'role': 'Staff'})
        assert response.status_code == 403

    def test_cannot_delete_self_or_last_admin(self, client_for, users):
        admin = client_for('Admin')
        response = admin.delete(f"/users/{users['Admin']}")
        assert response.status_code == 409
        assert response.get_json()['error'] == 'You cannot delete your own account'

        assert admin.delete(f"/users/{users['Staff']}").status_code == 200
        assert admin.delete('/users/9999').status_code == 404


class TestSeed:

    def test_seeds_admin_only_when_missing(self, app):
        app.config['ADMIN_PASSWORD'] = 'first-run-pass'
        assert seed_essential_data(app) is True
        assert seed_essential_data(app) is False
        with app.app_context():
            admin = User.query.filter_by(role='Admin').one()
            assert admin.username == 'admin'
            assert pbkdf2_sha256.verify('first-run-pass', admin.password_hash)

    def test_no_password_no_seed(self, app):
        app.config['ADMIN_PASSWORD'] = None
        assert seed_essential_data(app) is False
