from datetime import datetime

SLOT = '2026-03-03T10:00:00'


def test_acquire_lock_returns_held_lock(api_client) -> None:
    response = api_client.post('/locks', json={'therapist_id': 'therapist-1', 'slot_datetime': SLOT})

    assert response.status_code == 200
    body = response.json()
    assert body['success'] is True
    assert body['lock']['locked_by'] == 'client-a'
    assert body['lock']['expires_at'] == '2026-03-02T08:05:00'


def test_acquire_lock_conflict_returns_409(api_client, act_as) -> None:
    api_client.post('/locks', json={'therapist_id': 'therapist-1', 'slot_datetime': SLOT})
    act_as('client-b')

    response = api_client.post('/locks', json={'therapist_id': 'therapist-1', 'slot_datetime': SLOT})

    assert response.status_code == 409
    assert response.json()['detail']['code'] == 'SLOT_CONTENDED'


def test_acquire_lock_rejects_blank_therapist(api_client) -> None:
    response = api_client.post('/locks', json={'therapist_id': '  ', 'slot_datetime': SLOT})

    assert response.status_code == 422


def test_release_lock_is_idempotent(api_client, lock_manager) -> None:
    api_client.post('/locks', json={'therapist_id': 'therapist-1', 'slot_datetime': SLOT})

    for _ in range(2):
        response = api_client.delete('/locks', params={'therapist_id': 'therapist-1', 'slot_datetime': SLOT})
        assert response.status_code == 200
        assert response.json()['success'] is True

    assert lock_manager.get_lock('therapist-1', datetime(2026, 3, 3, 10, 0)) is None


def test_list_active_locks(api_client) -> None:
    api_client.post('/locks', json={'therapist_id': 'therapist-1', 'slot_datetime': SLOT})

    response = api_client.get('/locks/therapists/therapist-1', params={'date': '2026-03-03'})

    assert response.status_code == 200
    assert [lock['slot_datetime'] for lock in response.json()] == [SLOT]
