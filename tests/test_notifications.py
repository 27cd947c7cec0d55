"""Tests for in-app notifications."""

from app.extensions import db
from app.models import Notification
from app.services.notification_service import notify


def test_only_newest_notifications_are_kept(app, make_client):
    client = make_client('Ayesha Malik')

    with app.app_context():
        for i in range(55):
            notify(client.user_id, 'kameti_update', f'Update {i}', f'Message {i}')
        db.session.commit()

        titles = [n.title for n in Notification.query.filter_by(user_id=client.user_id)]
        assert len(titles) == 50
        assert 'Update 0' not in titles
        assert 'Update 54' in titles

    body = client.get('/api/notifications').get_json()
    assert body['unread_count'] == 50
    assert body['notifications'][0]['title'] == 'Update 54'


def test_read_and_delete(full_kameti):
    _, admin, _ = full_kameti
    # two "member joined" notices and the "kameti started" notice
    notifications = admin.get('/api/notifications').get_json()['notifications']
    assert len(notifications) == 3
    assert notifications[0]['title'] == 'Kameti Started'
    first, second = notifications[0], notifications[1]

    response = admin.put(f"/api/notifications/{first['id']}/read")
    assert response.get_json()['notification']['read'] is True
    assert response.get_json()['unread_count'] == 2

    unread = admin.get('/api/notifications?unread=true').get_json()['notifications']
    assert first['id'] not in [n['id'] for n in unread]

    assert admin.put('/api/notifications/read-all').get_json()['updated'] == 2

    assert admin.delete(f"/api/notifications/{second['id']}").status_code == 200
    assert admin.delete(f"/api/notifications/{second['id']}").status_code == 404


def test_cannot_touch_other_users_notifications(full_kameti):
    _, admin, (member, _) = full_kameti
    notification_id = admin.get('/api/notifications').get_json()['notifications'][0]['id']

    assert member.put(f'/api/notifications/{notification_id}/read').status_code == 404
    assert member.delete(f'/api/notifications/{notification_id}').status_code == 404
