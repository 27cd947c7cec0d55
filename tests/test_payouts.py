"""Tests for round readiness, recipient selection and the payout rotation."""

from app.extensions import db
from app.models import Kameti, KametiStatus, Payout
from app.services.payout_service import check_and_update_completion_status


def _pay_round(pay, kameti_id, clients):
    for client in clients:
        pay(client, kameti_id)


def test_round_not_ready_until_everyone_pays(full_kameti, pay):
    kameti, admin, (first, second) = full_kameti
    pay(first, kameti['id'])

    readiness = admin.get(f"/api/payouts/{kameti['id']}/readiness").get_json()['readiness']
    assert readiness['ready'] is False
    assert readiness['reason'] == '1/3 members have paid'

    response = admin.post(f"/api/payouts/{kameti['id']}/process")
    assert response.status_code == 400
    assert 'not ready' in response.get_json()['message']


def test_readiness_can_send_reminders(full_kameti):
    kameti, admin, (first, _) = full_kameti

    response = first.get(f"/api/payouts/{kameti['id']}/readiness?send_reminders=true")
    assert response.status_code == 403

    response = admin.get(f"/api/payouts/{kameti['id']}/readiness?send_reminders=true")
    assert response.get_json()['readiness']['reminders_sent'] == 3


def test_pending_kameti_needs_policy_override(make_client, create_kameti):
    admin = make_client('Ayesha Malik')
    kameti = create_kameti(admin)

    readiness = admin.get(f"/api/payouts/{kameti['id']}/readiness").get_json()['readiness']
    assert readiness['needs_policy_override'] is True
    assert readiness['ready'] is False


def test_only_admin_processes_payout(full_kameti, pay):
    kameti, admin, members = full_kameti
    _pay_round(pay, kameti['id'], [admin] + members)

    response = members[0].post(f"/api/payouts/{kameti['id']}/process")
    assert response.status_code == 403


def test_sequential_payout_advances_round(full_kameti, pay):
    kameti, admin, members = full_kameti
    _pay_round(pay, kameti['id'], [admin] + members)

    preview = admin.post(f"/api/payouts/{kameti['id']}/select").get_json()
    assert preview['recipient']['user_id'] == admin.user_id
    assert preview['selection_method'] == 'sequential'

    response = admin.post(f"/api/payouts/{kameti['id']}/process")
    assert response.status_code == 200
    body = response.get_json()
    assert body['payout']['recipient_id'] == admin.user_id
    assert body['payout']['amount'] == 15000
    assert body['next_round'] == 2
    assert body['is_completed'] is False

    details = admin.get(f"/api/kametis/{kameti['id']}").get_json()['kameti']
    assert details['round'] == '2 of 3'
    assert details['total_disbursed'] == 15000
    assert all(m['payment_status'] == 'unpaid' for m in details['members'])

    eligible = admin.get(f"/api/payouts/{kameti['id']}/eligible").get_json()['eligible']
    assert [m['user_id'] for m in eligible] == [m.user_id for m in members]


def test_admin_chosen_recipient(full_kameti, pay):
    kameti, admin, (first, second) = full_kameti
    _pay_round(pay, kameti['id'], [admin, first, second])

    response = admin.post(f"/api/payouts/{kameti['id']}/process",
                          json={'recipient_id': second.user_id})
    payout = response.get_json()['payout']
    assert payout['recipient_id'] == second.user_id
    assert payout['selection_method'] == 'admin'

    types = [n['type'] for n in second.get('/api/notifications').get_json()['notifications']]
    assert 'payout_received' in types


def test_recipient_must_be_eligible(full_kameti, make_client, pay):
    kameti, admin, members = full_kameti
    outsider = make_client('Kamran Akmal')
    _pay_round(pay, kameti['id'], [admin] + members)

    response = admin.post(f"/api/payouts/{kameti['id']}/process",
                          json={'recipient_id': outsider.user_id})
    assert response.status_code == 400


def test_full_rotation_closes_kameti(full_kameti, pay):
    kameti, admin, members = full_kameti
    everyone = [admin] + members

    for expected_round in (1, 2, 3):
        _pay_round(pay, kameti['id'], everyone)
        body = admin.post(f"/api/payouts/{kameti['id']}/process").get_json()
        assert body['payout']['round'] == expected_round

    assert body['is_completed'] is True
    assert body['next_round'] is None
    assert body['kameti_status'] == 'Closed'

    details = admin.get(f"/api/kametis/{kameti['id']}").get_json()['kameti']
    assert details['round'] == 'Closed (3 of 3)'
    assert details['total_collected'] == 45000
    assert details['total_disbursed'] == 45000

    recipients = [m['payout_round'] for m in details['members']]
    assert recipients == [1, 2, 3]

    history = admin.get(f"/api/payouts/{kameti['id']}/history").get_json()['payouts']
    assert [p['round'] for p in history] == [3, 2, 1]

    response = members[0].post('/api/payments/initiate', json={'kameti_id': kameti['id']})
    assert response.status_code == 400
    assert admin.post(f"/api/payouts/{kameti['id']}/process").status_code == 403

    assert admin.delete(f"/api/kametis/{kameti['id']}").status_code == 200


def test_round_ready_when_every_joined_member_paid(make_client, create_kameti, pay):
    admin = make_client('Ayesha Malik')
    member = make_client('Bilal Ahmed')
    kameti = create_kameti(admin)
    member.post(f"/api/kametis/{kameti['id']}/join")
    _pay_round(pay, kameti['id'], [admin, member])

    readiness = admin.get(f"/api/payouts/{kameti['id']}/readiness").get_json()['readiness']
    assert readiness['ready'] is True
    assert readiness['needs_policy_override'] is True
    assert readiness['paid_members'] == 2

    body = admin.post(f"/api/payouts/{kameti['id']}/process").get_json()
    assert body['payout']['amount'] == 10000
    assert body['next_round'] == 2


def test_payout_with_fewer_members_uses_adjusted_amount(make_client, create_kameti, pay):
    admin = make_client('Ayesha Malik')
    member = make_client('Bilal Ahmed')
    kameti = create_kameti(admin)
    member.post(f"/api/kametis/{kameti['id']}/join")

    response = admin.put(f"/api/kametis/{kameti['id']}/policy", json={
        'allow_payout_with_fewer_members': True, 'adjusted_members_count': 2,
        'adjusted_amount': 4000
    })
    assert response.status_code == 200

    payment = pay(member, kameti['id'])
    assert payment['amount'] == 4000
    readiness = admin.get(f"/api/payouts/{kameti['id']}/readiness").get_json()['readiness']
    assert readiness['ready'] is False
    assert readiness['reason'] == '1/2 members have paid'

    pay(admin, kameti['id'])
    readiness = admin.get(f"/api/payouts/{kameti['id']}/readiness").get_json()['readiness']
    assert readiness['ready'] is True
    assert readiness['pool_amount'] == 8000

    body = admin.post(f"/api/payouts/{kameti['id']}/process").get_json()
    assert body['payout']['amount'] == 4000 * 2
    assert body['payout']['paid_members'] == 2


def test_completion_waits_for_the_last_round_payout(app, full_kameti):
    kameti, _, _ = full_kameti

    with app.app_context():
        stored = db.session.get(Kameti, kameti['id'])
        stored.current_round = 3
        assert check_and_update_completion_status(stored) is False

        for round_number, member in enumerate(stored.members, start=1):
            assert stored.status == KametiStatus.ACTIVE.value
            db.session.add(Payout(kameti_id=stored.id, recipient_id=member.user_id,
                                  round=round_number, amount=15000, paid_members=3,
                                  selection_method='sequential'))
            closed = check_and_update_completion_status(stored)
            assert closed is (round_number == 3)

        assert stored.status == KametiStatus.CLOSED.value
        assert stored.round_label == 'Closed (3 of 3)'
