"""Tests for contributions, the PayFast IPN and payment queries."""

from datetime import date, datetime, time, timedelta

from app.extensions import db
from app.models import Kameti, Payment, PaymentRecord
from app.services.payment_service import (
    complete_contribution, contribution_due, mark_overdue_records
)


def _initiate(client, kameti_id):
    response = client.post('/api/payments/initiate', json={'kameti_id': kameti_id})
    assert response.status_code == 200, response.get_json()
    return response.get_json()


def _notification_types(client):
    return [n['type'] for n in client.get('/api/notifications').get_json()['notifications']]


def test_initiate_returns_signed_gateway_request(full_kameti, app):
    kameti, _, (member, _) = full_kameti
    body = _initiate(member, kameti['id'])

    payment = body['payment']
    assert payment['status'] == 'pending'
    assert payment['amount'] == 5000
    assert payment['transaction_id'].startswith('KAMETI-')
    assert body['record']['status'] == 'pending'

    params = body['params']
    assert params['amount'] == '5000.00'
    assert params['m_payment_id'] == payment['transaction_id']
    assert params['custom_str1'] == kameti['kameti_code']
    assert params['notify_url'].endswith('/api/payments/notify')
    assert body['payment_url'].startswith(app.config['PAYFAST_PROCESS_URL'] + '?')


def test_initiate_requires_membership(full_kameti, make_client):
    kameti, _, _ = full_kameti
    outsider = make_client('Kamran Akmal')
    response = outsider.post('/api/payments/initiate', json={'kameti_id': kameti['id']})
    assert response.status_code == 403


def test_new_initiate_cancels_stale_attempt(full_kameti):
    kameti, _, (member, _) = full_kameti
    first = _initiate(member, kameti['id'])['payment']
    _initiate(member, kameti['id'])

    history = member.get('/api/payments/history').get_json()['payments']
    statuses = {p['transaction_id']: p['status'] for p in history}
    assert statuses[first['transaction_id']] == 'cancelled'


def test_ipn_completes_contribution(full_kameti, send_ipn):
    kameti, admin, (member, other) = full_kameti
    payment = _initiate(member, kameti['id'])['payment']

    response = send_ipn(payment)
    assert response.status_code == 200
    assert response.get_json()['status'] == 'completed'

    details = admin.get(f"/api/kametis/{kameti['id']}").get_json()['kameti']
    paid = {m['user_id']: m['payment_status'] for m in details['members']}
    assert paid[member.user_id] == 'paid'
    assert details['total_collected'] == 5000
    assert details['readiness']['paid_members'] == 1

    assert 'payment_received' in _notification_types(admin)
    assert 'payment_received' in _notification_types(member)
    assert 'payment_reminder' in _notification_types(other)

    records = member.get('/api/payments/records').get_json()['records']
    assert records[0]['status'] == 'paid'
    assert records[0]['is_late'] is False


def test_ipn_is_idempotent(full_kameti, send_ipn):
    kameti, admin, (member, _) = full_kameti
    payment = _initiate(member, kameti['id'])['payment']

    send_ipn(payment)
    response = send_ipn(payment)
    assert response.status_code == 200
    assert response.get_json()['status'] == 'already_processed'

    details = admin.get(f"/api/kametis/{kameti['id']}").get_json()['kameti']
    assert details['total_collected'] == 5000


def test_ipn_rejects_bad_signature(full_kameti, app):
    kameti, _, (member, _) = full_kameti
    payment = _initiate(member, kameti['id'])['payment']

    response = app.test_client().post('/api/payments/notify', data={
        'm_payment_id': payment['transaction_id'],
        'payment_status': 'COMPLETE',
        'amount_gross': '5000.00',
        'signature': 'not-a-valid-signature',
    })
    assert response.status_code == 400

    history = member.get('/api/payments/history').get_json()['payments']
    assert history[0]['status'] == 'pending'


def test_ipn_unknown_transaction(send_ipn, app):
    response = send_ipn({'id': 0, 'transaction_id': 'KAMETI-UNKNOWN-1', 'amount': 100})
    assert response.status_code == 404


def test_ipn_amount_mismatch_fails_payment(full_kameti, send_ipn):
    kameti, _, (member, _) = full_kameti
    payment = _initiate(member, kameti['id'])['payment']

    response = send_ipn(payment, amount=10)
    assert response.get_json()['status'] == 'failed'

    details = member.get(f"/api/kametis/{kameti['id']}").get_json()['kameti']
    paid = {m['user_id']: m['payment_status'] for m in details['members']}
    assert paid[member.user_id] == 'unpaid'


def test_ipn_cancelled(full_kameti, send_ipn):
    kameti, _, (member, _) = full_kameti
    payment = _initiate(member, kameti['id'])['payment']

    response = send_ipn(payment, status='CANCELLED')
    assert response.get_json()['status'] == 'cancelled'

    records = member.get('/api/payments/records').get_json()['records']
    assert records[0]['status'] == 'cancelled'


def test_cannot_pay_twice_in_a_round(full_kameti, pay):
    kameti, _, (member, _) = full_kameti
    pay(member, kameti['id'])

    response = member.post('/api/payments/initiate', json={'kameti_id': kameti['id']})
    assert response.status_code == 400
    assert 'already paid' in response.get_json()['message']


def test_round_ready_notifies_admin(full_kameti, pay):
    kameti, admin, members = full_kameti
    for client in [admin] + members:
        pay(client, kameti['id'])

    assert 'round_ready' in _notification_types(admin)
    readiness = admin.get(f"/api/payouts/{kameti['id']}/readiness").get_json()['readiness']
    assert readiness['ready'] is True
    assert readiness['reason'] == 'All members have paid'
    assert readiness['pool_amount'] == 15000


def test_manual_payment(full_kameti):
    kameti, admin, (member, other) = full_kameti

    response = member.post('/api/payments/manual', json={
        'kameti_id': kameti['id'], 'user_id': other.user_id, 'method': 'cash'
    })
    assert response.status_code == 403

    response = admin.post('/api/payments/manual', json={
        'kameti_id': kameti['id'], 'user_id': member.user_id, 'method': 'cheque'
    })
    assert response.status_code == 400

    response = admin.post('/api/payments/manual', json={
        'kameti_id': kameti['id'], 'user_id': member.user_id, 'method': 'cash',
        'notes': 'Paid at the monthly meeting'
    })
    assert response.status_code == 201
    payment = response.get_json()['payment']
    assert payment['status'] == 'completed'
    assert payment['payment_method'] == 'cash'

    records = admin.get(f"/api/payments/records?kameti_id={kameti['id']}").get_json()['records']
    assert records[0]['verified_by'] == admin.user_id


def test_payment_queries(full_kameti, pay):
    kameti, admin, (member, other) = full_kameti
    payment = pay(member, kameti['id'])

    stats = member.get('/api/payments/statistics').get_json()['statistics']
    assert stats['completed']['count'] == 1
    assert stats['completed']['total'] == 5000

    response = other.get(f"/api/payments/statistics?kameti_id={kameti['id']}")
    assert response.status_code == 403

    kameti_payments = admin.get(f"/api/payments/kameti/{kameti['id']}").get_json()['payments']
    assert len(kameti_payments) == 1

    response = admin.get(f"/api/payments/{payment['payment_code']}")
    assert response.get_json()['payment']['transaction_id'] == payment['transaction_id']

    response = other.get(f"/api/payments/transaction/{payment['transaction_id']}")
    assert response.status_code == 403

    response = member.get('/api/payments/transaction/KAMETI-MISSING')
    assert response.status_code == 404

    assert member.get('/api/payments/overdue').get_json()['overdue'] == []


# ============== LATE PAYMENTS ==============

def test_mark_as_paid_tracks_lateness():
    record = PaymentRecord(due_date=date(2026, 1, 10), late_fee=250)

    record.mark_as_paid('KAMETI-TX-1', paid_at=datetime(2026, 1, 10, 23, 59), late_fee=250)
    assert record.status == 'paid'
    assert record.is_late is False
    assert record.days_late == 0
    assert record.late_fee == 0.0

    record.mark_as_paid('KAMETI-TX-1', paid_at=datetime(2026, 1, 11, 0, 0), late_fee=250)
    assert record.is_late is True
    assert record.days_late == 1
    assert record.late_fee == 250

    record.mark_as_paid('KAMETI-TX-1', paid_at=datetime(2026, 1, 13, 12, 0), late_fee=250)
    assert record.days_late == 3


def test_contribution_due_adds_late_fee_after_due_date():
    kameti = Kameti(amount=5000, late_payment_fee=250, start_date=date(2026, 1, 31),
                    contribution_frequency='monthly', current_round=2, members_count=3)

    assert contribution_due(kameti, on_date=date(2026, 2, 28)) == (5000, 0.0, date(2026, 2, 28))
    assert contribution_due(kameti, on_date=date(2026, 3, 1)) == (5250, 250, date(2026, 2, 28))

    kameti.adjusted_amount = 4000
    assert contribution_due(kameti, on_date=date(2026, 3, 1))[0] == 4250


def test_late_contribution_charges_and_records_fee(app, make_client, create_kameti, send_ipn):
    admin = make_client('Ayesha Malik')
    kameti = create_kameti(admin, late_payment_fee=250)

    with app.app_context():
        stored = db.session.get(Kameti, kameti['id'])
        stored.start_date = date.today() - timedelta(days=3)
        db.session.commit()

    body = _initiate(admin, kameti['id'])
    assert body['payment']['amount'] == 5250
    assert body['record']['late_fee'] == 250
    send_ipn(body['payment'])

    record = admin.get('/api/payments/records').get_json()['records'][0]
    assert record['status'] == 'paid'
    assert record['is_late'] is True
    assert record['late_fee'] == 250
    assert record['days_late'] >= 2


def test_fee_not_recorded_when_payment_did_not_include_it(app, make_client, create_kameti):
    admin = make_client('Ayesha Malik')
    kameti = create_kameti(admin, late_payment_fee=250)
    body = _initiate(admin, kameti['id'])
    assert body['payment']['amount'] == 5000

    next_morning = datetime.combine(date.today() + timedelta(days=1), time(9, 0))
    with app.app_context():
        payment = Payment.query.filter_by(transaction_id=body['payment']['transaction_id']).first()
        record = PaymentRecord.query.filter_by(payment_id=payment.id).first()
        complete_contribution(payment, record, paid_at=next_morning)
        db.session.commit()

        assert record.is_late is True
        assert record.days_late == 1
        assert record.late_fee == 0.0
        assert payment.amount == 5000


def test_overdue_records_can_still_be_paid(app, make_client, create_kameti, send_ipn):
    admin = make_client('Ayesha Malik')
    kameti = create_kameti(admin)
    body = _initiate(admin, kameti['id'])

    with app.app_context():
        assert mark_overdue_records(on_date=date.today() + timedelta(days=1)) == 1
        db.session.commit()

    record = admin.get('/api/payments/records').get_json()['records'][0]
    assert record['status'] == 'overdue'
    assert record['is_overdue'] is True

    assert send_ipn(body['payment']).status_code == 200
    record = admin.get('/api/payments/records').get_json()['records'][0]
    assert record['status'] == 'paid'
    assert record['is_overdue'] is False
