"""Tests for raising disputes and the kameti admin's dispute actions."""

import io
import os

import pytest


@pytest.fixture
def paid_member(full_kameti, pay):
    """Full kameti where the first member has paid round 1."""
    kameti, admin, (member, other) = full_kameti
    payment = pay(member, kameti['id'])
    return kameti, admin, member, other, payment


def _raise(client, kameti_id, **overrides):
    data = {
        'kameti_id': kameti_id,
        'reason': 'incorrect_amount',
        'explanation': 'I was charged more than the agreed contribution.',
    }
    data.update(overrides)
    return client.post('/api/disputes', json=data)


def test_reasons_are_listed(app):
    reasons = app.test_client().get('/api/disputes/reasons').get_json()['reasons']
    values = [r['value'] for r in reasons]
    assert 'payment_not_recorded' in values
    assert 'other' in values


def test_raise_dispute_for_own_transaction(paid_member):
    kameti, admin, member, other, payment = paid_member

    response = _raise(member, kameti['id'], transaction_id=payment['transaction_id'],
                      priority='high')
    assert response.status_code == 201
    dispute = response.get_json()['dispute']
    assert dispute['case_id'].startswith('CASE-')
    assert dispute['status'] == 'open'
    assert dispute['priority'] == 'high'
    assert dispute['resolution'] == 'pending'
    assert dispute['reason_label'] == 'Incorrect Amount'

    for client in (admin, other):
        types = [n['type'] for n in client.get('/api/notifications').get_json()['notifications']]
        assert 'dispute_raised' in types

    activities = admin.get(f"/api/kametis/{kameti['id']}/activities").get_json()['activities']
    assert activities[0]['type'] == 'dispute_raised'

    mine = member.get('/api/disputes/mine').get_json()['disputes']
    assert [d['case_id'] for d in mine] == [dispute['case_id']]


def test_one_active_dispute_per_transaction(paid_member):
    kameti, _, member, _, payment = paid_member
    tx = payment['transaction_id']

    assert member.get(f'/api/disputes/can-raise?transaction_id={tx}').get_json()['can_raise']
    _raise(member, kameti['id'], transaction_id=tx)

    body = member.get(f'/api/disputes/can-raise?transaction_id={tx}').get_json()
    assert body['can_raise'] is False
    assert 'already exists' in body['reason']

    response = _raise(member, kameti['id'], transaction_id=tx)
    assert response.status_code == 400


def test_cannot_dispute_someone_elses_transaction(paid_member):
    kameti, _, _, other, payment = paid_member
    response = _raise(other, kameti['id'], transaction_id=payment['transaction_id'])
    assert response.status_code == 400
    assert 'Transaction not found' in response.get_json()['message']


@pytest.mark.parametrize('overrides, message', [
    ({'reason': 'bad_weather'}, 'valid dispute reason'),
    ({'explanation': 'too short'}, 'between 10 and 2000'),
    ({'priority': 'critical'}, 'Invalid priority'),
])
def test_raise_validation(full_kameti, overrides, message):
    kameti, _, (member, _) = full_kameti
    response = _raise(member, kameti['id'], **overrides)
    assert response.status_code == 400
    assert message in response.get_json()['message']


def test_outsider_cannot_raise(full_kameti, make_client):
    kameti, _, _ = full_kameti
    outsider = make_client('Kamran Akmal')
    assert _raise(outsider, kameti['id']).status_code == 403


def test_proof_files_upload(full_kameti, app):
    kameti, _, (member, _) = full_kameti

    response = member.post('/api/disputes', data={
        'kameti_id': str(kameti['id']),
        'reason': 'payment_not_recorded',
        'explanation': 'My bank transfer is not showing in the kameti.',
        'proof': [(io.BytesIO(b'%PDF-1.4 receipt'), 'bank receipt.pdf'),
                  (io.BytesIO(b'png-bytes'), 'screenshot.png')],
    }, content_type='multipart/form-data')
    assert response.status_code == 201

    proofs = response.get_json()['dispute']['proof_files']
    assert len(proofs) == 2
    assert proofs[0]['original_name'] == 'bank receipt.pdf'
    assert proofs[0]['filename'].endswith('bank_receipt.pdf')
    assert all(os.path.exists(p['path']) for p in proofs)


def test_proof_file_type_is_checked(full_kameti):
    kameti, _, (member, _) = full_kameti

    response = member.post('/api/disputes', data={
        'kameti_id': str(kameti['id']),
        'reason': 'other',
        'explanation': 'Attaching the script I used to compute totals.',
        'proof': [(io.BytesIO(b'print(1)'), 'totals.py')],
    }, content_type='multipart/form-data')
    assert response.status_code == 400
    assert 'Only images' in response.get_json()['message']


def test_admin_review_and_refund(paid_member):
    kameti, admin, member, _, payment = paid_member
    case_id = _raise(member, kameti['id'],
                     transaction_id=payment['transaction_id']).get_json()['dispute']['case_id']

    assert member.put(f'/api/admin/disputes/{case_id}/review').status_code == 403

    response = admin.put(f'/api/admin/disputes/{case_id}/review')
    assert response.get_json()['dispute']['status'] == 'under_review'
    assert admin.put(f'/api/admin/disputes/{case_id}/review').status_code == 400

    response = admin.put(f'/api/admin/disputes/{case_id}/resolve',
                         json={'resolution_type': 'refund'})
    assert response.status_code == 400

    response = admin.put(f'/api/admin/disputes/{case_id}/resolve', json={
        'resolution_type': 'refund',
        'resolution_amount': 5000,
        'resolution_notes': 'Duplicate charge confirmed with the bank.',
    })
    assert response.status_code == 200
    dispute = response.get_json()['dispute']
    assert dispute['status'] == 'resolved'
    assert dispute['resolution'] == 'approved'
    assert dispute['resolution_amount'] == 5000

    refunded = member.get(f"/api/payments/transaction/{payment['transaction_id']}").get_json()
    assert refunded['payment']['status'] == 'refunded'
    assert refunded['payment']['audit_trail'][-1]['action'] == 'refunded'

    types = [n['type'] for n in member.get('/api/notifications').get_json()['notifications']]
    assert 'dispute_resolved' in types


def test_reject_requires_notes(full_kameti):
    kameti, admin, (member, _) = full_kameti
    case_id = _raise(member, kameti['id']).get_json()['dispute']['case_id']

    response = admin.put(f'/api/admin/disputes/{case_id}/reject', json={})
    assert response.status_code == 400

    response = admin.put(f'/api/admin/disputes/{case_id}/reject',
                         json={'rejection_notes': 'Amount matches the agreed contribution.'})
    dispute = response.get_json()['dispute']
    assert dispute['status'] == 'rejected'
    assert dispute['resolution'] == 'rejected'

    response = admin.put(f'/api/admin/disputes/{case_id}/reject',
                         json={'rejection_notes': 'Again'})
    assert response.status_code == 400


def test_dispute_visibility(full_kameti):
    kameti, admin, (member, other) = full_kameti
    case_id = _raise(member, kameti['id']).get_json()['dispute']['case_id']

    assert member.get(f'/api/disputes/{case_id}').status_code == 200
    assert admin.get(f'/api/disputes/{case_id}').status_code == 200
    assert other.get(f'/api/disputes/{case_id}').status_code == 403
    assert member.get('/api/disputes/CASE-MISSING').status_code == 404

    listed = other.get(f"/api/disputes/kameti/{kameti['id']}").get_json()['disputes']
    assert len(listed) == 1


def test_admin_dashboard(full_kameti):
    kameti, admin, (member, other) = full_kameti
    first = _raise(member, kameti['id']).get_json()['dispute']['case_id']
    _raise(other, kameti['id'], reason='payout_issue', priority='low')

    response = admin.put(f'/api/admin/disputes/{first}/priority', json={'priority': 'urgent'})
    assert response.get_json()['dispute']['priority'] == 'urgent'
    assert admin.put(f'/api/admin/disputes/{first}/priority',
                     json={'priority': 'whenever'}).status_code == 400

    urgent = admin.get('/api/admin/disputes?priority=urgent').get_json()['disputes']
    assert [d['case_id'] for d in urgent] == [first]

    stats = admin.get('/api/admin/disputes/statistics').get_json()['statistics']
    assert stats['total'] == 2
    assert stats['by_status']['open'] == 2
    assert stats['by_reason']['payout_issue'] == 1

    assert member.get('/api/admin/disputes').get_json()['disputes'] == []

    assert admin.delete(f'/api/admin/disputes/{first}').status_code == 200
    assert admin.get('/api/admin/disputes/statistics').get_json()['statistics']['total'] == 1
