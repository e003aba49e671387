from models import db, ActivityLog, Notification
from permissions import Role
from audit import record_activity, snapshot
from notifications import notify_users


def test_record_activity_is_part_of_the_callers_transaction(app, make_user):
    user = make_user(Role.MEMBER)

    record_activity(user.id, 'Updated', 'Task', 1, old_values={'a': 1})
    db.session.rollback()
    assert ActivityLog.query.count() == 0

    record_activity(str(user.id), 'Updated', 'Task', 1, new_values={'a': 2}, project_id=3)
    db.session.commit()
    log = ActivityLog.query.one()
    assert log.user_id == user.id
    assert log.project_id == 3
    assert log.new_values == {'a': 2}


def test_snapshot_serializes_dates(app, make_user):
    user = make_user(Role.MEMBER)
    data = snapshot(user, ['username', 'created_at'])
    assert data['username'] == user.username
    assert data['created_at'] == user.created_at.isoformat()


def test_audit_log_is_admin_only(client, make_user, headers, admin):
    manager = make_user(Role.MANAGER)
    client.post('/projects', json={'name': 'one'}, headers=headers(manager))
    client.post('/projects', json={'name': 'two'}, headers=headers(manager))

    assert client.get('/audit', headers=headers(manager)).status_code == 403

    resp = client.get('/audit?entity_name=Project', headers=headers(admin))
    assert resp.status_code == 200
    logs = resp.get_json()['logs']
    assert [log['new_values']['name'] for log in logs] == ['two', 'one']
    assert logs[0]['username'] == manager.username


def test_notify_users_skips_actor_and_duplicates(app, make_user):
    actor = make_user(Role.MANAGER)
    other = make_user(Role.MEMBER)

    created = notify_users([actor.id, other.id, other.id, None], 'member_added', 'hi',
                           exclude_user_id=str(actor.id))
    db.session.commit()

    assert len(created) == 1
    assert Notification.query.one().user_id == other.id


def test_notification_endpoints(client, make_user, headers):
    user = make_user(Role.MEMBER)
    notify_users([user.id], 'task_assigned', 'first')
    notify_users([user.id], 'comment_added', 'second')
    db.session.commit()

    resp = client.get('/api/notifications', headers=headers(user))
    body = resp.get_json()
    assert body['unread_count'] == 2
    assert [n['title'] for n in body['notifications']] == ['second', 'first']

    first_id = body['notifications'][1]['id']
    assert client.patch(f'/api/notifications/{first_id}/read', headers=headers(user)).status_code == 200

    resp = client.get('/api/notifications?unread_only=true', headers=headers(user))
    assert [n['title'] for n in resp.get_json()['notifications']] == ['second']

    resp = client.patch('/api/notifications/read-all', headers=headers(user))
    assert resp.get_json()['updated'] == 1

    assert client.delete(f'/api/notifications/{first_id}', headers=headers(user)).status_code == 200
    assert Notification.query.filter_by(user_id=user.id).count() == 1


def test_users_only_see_their_own_notifications(client, make_user, headers):
    owner = make_user(Role.MEMBER)
    other = make_user(Role.MEMBER)
    notification = notify_users([owner.id], 'task_assigned', 'mine')[0]
    db.session.commit()

    resp = client.patch(f'/api/notifications/{notification.id}/read', headers=headers(other))
    assert resp.status_code == 404
