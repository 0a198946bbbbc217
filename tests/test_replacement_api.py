"""HTTP surface of the replacement workflow: roles, status codes and payloads."""
import pytest


def _create(client, dealer_id, product_id, qty=10):
    return client.post('/replacement', json={
        'dealer_id': dealer_id,
        'brand': 'Green Tel',
        'items': [{'product_id': product_id, 'claimed_qty': qty}],
    })


def _triage(client, case_id, product_id, good=6, repairable=2, bad=1, damage=1):
    return client.post(f'/replacement/{case_id}/triage', json={'items': [{
        'product_id': product_id, 'good_qty': good, 'repairable_qty': repairable,
        'bad_qty': bad, 'damage_qty': damage,
    }]})


@pytest.fixture
def manager_client(client_for):
    return client_for('Manager')


class TestAccess:

    def test_anonymous_gets_401(self, app, users):
        client = app.test_client()
        response = client.get('/replacement')
        assert response.status_code == 401
        assert 'error' in response.get_json()

    def test_staff_can_read_but_not_drive(self, client_for, dealer_id, product_id):
        staff = client_for('Staff')
        assert staff.get('/replacement').status_code == 200

        response = _create(staff, dealer_id, product_id)
        assert response.status_code == 403
        assert "not authorized" in response.get_json()['error']

    def test_sales_role_has_no_replacement_module(self, client_for):
        response = client_for('Sales').get('/replacement/stats')
        assert response.status_code == 403
        assert response.get_json()['error'] == "You don't have permission to access replacement"

    def test_only_admin_deletes(self, manager_client, client_for, dealer_id, product_id):
        case_id = _create(manager_client, dealer_id, product_id).get_json()['id']
        assert manager_client.delete(f'/replacement/{case_id}').status_code == 403

        response = client_for('Admin').delete(f'/replacement/{case_id}')
        assert response.status_code == 200
        assert response.get_json()['message'] == 'Replacement GT-RPL-00001 deleted'


class TestWorkflowOverHttp:

    def test_full_lifecycle(self, manager_client, dealer_id, product_id):
        response = _create(manager_client, dealer_id, product_id)
        assert response.status_code == 201
        case = response.get_json()
        assert case['replacement_no'] == 'GT-RPL-00001'
        assert case['status'] == 'Pending'
        assert case['dealer']['name'] == 'Rahman Electronics'

        response = _triage(manager_client, case['id'], product_id, good=5)
        assert response.status_code == 200
        body = response.get_json()
        assert body['status'] == 'Checked'
        assert body['is_ledger_adjusted'] is True
        assert body['items'][0]['unit_price'] == '100.00'
        assert len(body['warnings']) == 1

        response = manager_client.post(f"/replacement/{case['id']}/factory-send")
        assert response.status_code == 200
        assert response.get_json()['repair_details']['sent_date'] is not None

        response = manager_client.post(f"/replacement/{case['id']}/factory-receive",
                                       json={'high_cost_qty': 2, 'low_cost_qty': 1})
        assert response.status_code == 400
        assert 'exceeds repairable quantity' in response.get_json()['error']

        response = manager_client.post(f"/replacement/{case['id']}/factory-receive",
                                       json={'high_cost_qty': 1, 'low_cost_qty': 1, 'repair_note': 'ok'})
        assert response.status_code == 200
        details = response.get_json()['repair_details']
        assert response.get_json()['status'] == 'Repaired'
        assert details['total_repair_cost'] == '650.00'

        product = manager_client.get(f'/inventory/{product_id}').get_json()
        assert product['stock'] == {'good_qty': 57, 'bad_qty': 1, 'damage_qty': 1, 'repair_qty': 2}

    def test_wrong_state_is_409(self, manager_client, dealer_id, product_id):
        case_id = _create(manager_client, dealer_id, product_id).get_json()['id']
        response = manager_client.post(f'/replacement/{case_id}/factory-send')
        assert response.status_code == 409

        assert _triage(manager_client, case_id, product_id).status_code == 200
        response = _triage(manager_client, case_id, product_id)
        assert response.status_code == 409
        assert 'already been checked' in response.get_json()['error']

    def test_invalid_dealer_is_400(self, manager_client, retail_id, product_id):
        response = _create(manager_client, retail_id, product_id)
        assert response.status_code == 400
        assert response.get_json() == {'error': 'Invalid dealer'}

    def test_unknown_case_is_404(self, manager_client):
        assert manager_client.get('/replacement/9999').status_code == 404
        assert manager_client.post('/replacement/9999/factory-send').status_code == 404

    def test_non_object_body_is_400(self, manager_client):
        response = manager_client.post('/replacement', json=[1, 2, 3])
        assert response.status_code == 400


class TestReadEndpoints:

    def test_list_filters_and_paginates(self, manager_client, dealer_id, product_id):
        for _ in range(3):
            _create(manager_client, dealer_id, product_id, qty=1)

        body = manager_client.get(f'/replacement?dealer_id={dealer_id}&limit=2').get_json()
        assert len(body['replacements']) == 2
        assert body['pagination'] == {'page': 1, 'limit': 2, 'total': 3, 'pages': 2}
        # newest first
        assert body['replacements'][0]['replacement_no'] == 'GT-RPL-00003'

        body = manager_client.get('/replacement?status=Checked').get_json()
        assert body['replacements'] == []

    def test_stats_and_dealer_summary(self, manager_client, dealer_id, product_id):
        case_id = _create(manager_client, dealer_id, product_id).get_json()['id']
        _triage(manager_client, case_id, product_id)

        stats = manager_client.get('/replacement/stats', query_string={'brand': 'Green Tel'}).get_json()
        assert stats['pending']['total_qty'] == 2
        assert stats['in_factory']['total_qty'] == 0

        body = manager_client.get(f'/replacement/dealer/{dealer_id}').get_json()
        assert body['dealer']['id'] == dealer_id
        assert body['summary']['total_repairable'] == 2
        assert len(body['replacements']) == 1
