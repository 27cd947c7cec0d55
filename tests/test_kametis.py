"""Tests for kameti creation, membership and deletion."""

from datetime import date, timedelta

import pytest


@pytest.mark.parametrize('overrides, message', [
    ({'name': 'ab'}, 'Name'),
    ({'description': 'too short'}, 'Description'),
    ({'amount': 500}, 'Amount'),
    ({'members_count': 1}, 'Members count'),
    ({'start_date': (date.today() - timedelta(days=1)).isoformat()}, 'past'),
    ({'start_date': (date.today() + timedelta(days=400)).isoformat()}, '1 year'),
    ({'payout_order': 'lottery'}, 'payout order'),
    ({'late_payment_fee': 6000}, 'Late payment fee'),
])
def test_create_kameti_validation(make_client, kameti_data, overrides, message):
    client = make_client('Ayesha Malik')
    response = client.post('/api/kametis', json=kameti_data(**overrides))
    assert response.status_code == 400
    assert message in response.get_json()['message']


def test_create_kameti(make_client, create_kameti):
    client = make_client('Ayesha Malik')
    kameti = create_kameti(client)

    assert kameti['status'] == 'Pending'
    assert kameti['round'] == '1 of 3'
    assert kameti['kameti_code'].startswith('KAMETI-')
    assert kameti['members'][0]['role'] == 'admin'
    assert kameti['members'][0]['user_id'] == client.user_id


def _form(payload):
    return {key: str(value) for key, value in payload.items()}


def test_create_kameti_from_form_fields(make_client, kameti_data):
    client = make_client('Ayesha Malik')
    response = client.post('/api/kametis', data=_form(kameti_data(is_private='false',
                                                                    auto_reminders='false')))
    assert response.status_code == 201, response.get_json()
    kameti = response.get_json()['kameti']
    assert kameti['is_private'] is False
    assert kameti['auto_reminders'] is False

    form = _form(kameti_data(name='Family Committee', is_private='on'))
    kameti = client.post('/api/kametis', data=form).get_json()['kameti']
    assert kameti['is_private'] is True
    assert kameti['auto_reminders'] is True


def test_duplicate_name_rejected(make_client, create_kameti, kameti_data):
    client = make_client('Ayesha Malik')
    create_kameti(client)
    response = client.post('/api/kametis', json=kameti_data(name='office committee'))
    assert response.status_code == 400


def test_kameti_becomes_active_when_full(full_kameti):
    kameti, admin, _ = full_kameti
    details = admin.get(f"/api/kametis/{kameti['id']}").get_json()['kameti']

    assert details['status'] == 'Active'
    assert details['current_members'] == 3
    assert details['is_admin'] is True
    assert details['readiness']['ready'] is False


def test_full_kameti_rejects_new_members(full_kameti, make_client):
    kameti, _, _ = full_kameti
    outsider = make_client('Kamran Akmal')
    response = outsider.post(f"/api/kametis/{kameti['id']}/join")
    assert response.status_code == 400
    assert 'full' in response.get_json()['message']


def test_join_request_flow(make_client, create_kameti):
    admin = make_client('Ayesha Malik')
    requester = make_client('Bilal Ahmed')
    kameti = create_kameti(admin, is_private=True)

    assert requester.post(f"/api/kametis/{kameti['id']}/join").status_code == 400

    response = requester.post(f"/api/kametis/{kameti['id']}/join-requests",
                              json={'message': 'Please add me'})
    assert response.status_code == 201
    request_id = response.get_json()['join_request']['id']

    response = requester.post(f"/api/kametis/{kameti['id']}/join-requests")
    assert response.status_code == 400

    response = requester.post(
        f"/api/kametis/{kameti['id']}/join-requests/{request_id}/approve")
    assert response.status_code == 403

    response = admin.post(f"/api/kametis/{kameti['id']}/join-requests/{request_id}/approve")
    assert response.status_code == 200
    assert response.get_json()['join_request']['status'] == 'approved'

    response = admin.post(f"/api/kametis/{kameti['id']}/join-requests/{request_id}/reject")
    assert response.status_code == 400

    members = admin.get(f"/api/kametis/{kameti['id']}").get_json()['kameti']['members']
    assert requester.user_id in [m['user_id'] for m in members]

    types = [n['type'] for n in admin.get('/api/notifications').get_json()['notifications']]
    assert 'join_request' in types
    types = [n['type'] for n in requester.get('/api/notifications').get_json()['notifications']]
    assert 'request_approved' in types


def test_decline_invite_notifies_admin(make_client, create_kameti):
    admin = make_client('Ayesha Malik')
    invitee = make_client('Bilal Ahmed')
    kameti = create_kameti(admin)

    response = invitee.post(f"/api/kametis/{kameti['id']}/decline")
    assert response.status_code == 200

    notifications = admin.get('/api/notifications').get_json()['notifications']
    assert notifications[0]['title'] == 'Invite Declined'
    assert 'Bilal Ahmed' in notifications[0]['message']

    assert admin.post(f"/api/kametis/{kameti['id']}/decline").status_code == 400
    assert invitee.post('/api/kametis/9999/decline').status_code == 404


def test_private_kameti_hidden_from_outsiders(make_client, create_kameti):
    admin = make_client('Ayesha Malik')
    outsider = make_client('Bilal Ahmed')
    kameti = create_kameti(admin, is_private=True)

    assert outsider.get(f"/api/kametis/{kameti['id']}").status_code == 403
    listed = outsider.get('/api/kametis').get_json()['kametis']
    assert kameti['id'] not in [k['id'] for k in listed]


def test_leave_kameti(make_client, create_kameti):
    admin = make_client('Ayesha Malik')
    member = make_client('Bilal Ahmed')
    kameti = create_kameti(admin)
    member.post(f"/api/kametis/{kameti['id']}/join")

    assert admin.post(f"/api/kametis/{kameti['id']}/leave").status_code == 400
    assert member.post(f"/api/kametis/{kameti['id']}/leave").status_code == 200

    details = admin.get(f"/api/kametis/{kameti['id']}").get_json()['kameti']
    assert details['current_members'] == 1
    activities = admin.get(f"/api/kametis/{kameti['id']}/activities").get_json()['activities']
    assert activities[0]['type'] == 'member_left'


def test_payout_policy_validation(make_client, create_kameti):
    admin = make_client('Ayesha Malik')
    kameti = create_kameti(admin)

    response = admin.put(f"/api/kametis/{kameti['id']}/policy", json={
        'allow_payout_with_fewer_members': True, 'adjusted_members_count': 5
    })
    assert response.status_code == 400

    response = admin.put(f"/api/kametis/{kameti['id']}/policy", json={
        'allow_payout_with_fewer_members': True, 'adjusted_members_count': 1
    })
    assert response.status_code == 200
    readiness = response.get_json()['readiness']
    assert readiness['needs_policy_override'] is False
    assert readiness['effective_members'] == 1


def test_delete_request_requires_every_member(full_kameti):
    kameti, admin, (first, second) = full_kameti
    url = f"/api/kametis/{kameti['id']}/delete-request"

    assert first.post(url).status_code == 403
    response = admin.post(url, json={'reason': 'Group disbanded'})
    assert response.status_code == 201
    assert response.get_json()['delete_request']['progress'] == '0/3'
    assert admin.post(url).status_code == 400

    response = admin.post(f"{url}/vote", json={'approve': True})
    assert response.get_json()['progress'] == '1/3'

    response = first.post(f"{url}/vote", json={'approve': True})
    assert response.status_code == 200
    assert response.get_json()['progress'] == '2/3'
    assert response.get_json()['deleted'] is False

    assert first.post(f"{url}/vote", json={'approve': True}).status_code == 400

    response = second.post(f"{url}/vote", json={'approve': True})
    assert response.get_json()['deleted'] is True
    assert admin.get(f"/api/kametis/{kameti['id']}").status_code == 404


def test_sole_member_can_delete_pending_kameti(make_client, create_kameti):
    admin = make_client('Ayesha Malik')
    kameti = create_kameti(admin)
    url = f"/api/kametis/{kameti['id']}/delete-request"

    response = admin.post(url)
    assert response.status_code == 201
    assert response.get_json()['delete_request']['progress'] == '0/1'

    response = admin.post(f"{url}/vote", json={'approve': True})
    assert response.status_code == 200
    assert response.get_json()['deleted'] is True
    assert admin.get(f"/api/kametis/{kameti['id']}").status_code == 404


def test_delete_request_rejected_by_one_member(full_kameti):
    kameti, admin, (first, _) = full_kameti
    url = f"/api/kametis/{kameti['id']}/delete-request"
    admin.post(url)

    response = first.post(f"{url}/vote", json={'approve': False})
    assert response.get_json()['status'] == 'rejected'
    assert admin.get(f"/api/kametis/{kameti['id']}").status_code == 200


def test_delete_directly_only_when_closed(make_client, create_kameti):
    admin = make_client('Ayesha Malik')
    kameti = create_kameti(admin)
    response = admin.delete(f"/api/kametis/{kameti['id']}")
    assert response.status_code == 400
