import json
import threading

import pytest

from promptparty.game import errors
from promptparty.game.errors import GameError
from promptparty.game.service import normalize_prompt
from promptparty.generation.client import JobStatus


def _code(fn, *args, **kwargs):
    with pytest.raises(GameError) as info:
        fn(*args, **kwargs)
    return info.value.code


def _log_messages(service):
    return [entry['message'] for entry in service.logs()]


def _start(service, count=2, timer=60):
    state = service.start_round('Cats', timer, count)
    return state['validTokens']


def _seat_all(service, tokens):
    return {token: service.join(token, f'P-{token}', connection_id=f'sock-{token}') for token in tokens}


def test_normalize_prompt_shapes():
    assert normalize_prompt('a cat') == 'a cat'
    assert normalize_prompt({'prompt': 'a cat'}) == 'a cat'
    assert normalize_prompt({'prompt': {'prompt': 'a cat'}}) == 'a cat'
    assert _code(normalize_prompt, {'text': 'a cat'}) == errors.INVALID_PAYLOAD
    assert _code(normalize_prompt, 42) == errors.INVALID_PAYLOAD
    assert _code(normalize_prompt, None) == errors.INVALID_PAYLOAD
    assert _code(normalize_prompt, 'x' * 501) == errors.PROMPT_TOO_LONG
    assert normalize_prompt('x' * 500) == 'x' * 500


def test_start_round_validation(service):
    assert _code(service.start_round, '  ', 60, 2) == errors.INVALID_PAYLOAD
    assert _code(service.start_round, 'Cats', 2, 2) == errors.INVALID_PAYLOAD
    assert _code(service.start_round, 'Cats', 'soon', 2) == errors.INVALID_PAYLOAD
    assert _code(service.start_round, 'Cats', 60, 0) == errors.INVALID_PAYLOAD
    assert _code(service.start_round, 'Cats', True, 2) == errors.INVALID_PAYLOAD

    state = service.start_round('Cats', '45', None)
    assert state['timer'] == 45
    assert state['expectedParticipantCount'] == 2
    assert state['status'] == 'WAITING_FOR_PLAYERS'


def test_join_before_round(service):
    assert _code(service.join, 'ABCD', 'Alice') == errors.GAME_NOT_STARTED
    assert any('GAME_NOT_STARTED' in m for m in _log_messages(service))


def test_public_state_hides_secrets(service):
    tokens = _start(service)
    result = service.join(tokens[0], 'Alice', connection_id='sock-1')

    assert result['connectionId'] == 'sock-1'
    secret = result['sessionSecret']
    dumped = json.dumps(service.state())
    assert secret not in dumped
    assert 'sock-1' not in dumped
    assert result['participant']['name'] == 'Alice'


def test_http_join_gets_generated_connection_id(service):
    tokens = _start(service)
    result = service.join(tokens[0], 'Alice')
    assert result['connectionId'].startswith('http_')


def test_join_broadcasts(service, recorder):
    tokens = _start(service)
    service.join(tokens[0], 'Alice')
    joined = recorder.named('participant:joined')
    assert joined == [{'token': tokens[0], 'name': 'Alice', 'color': '#BEFA4F'}]
    assert recorder.named('state:update')[-1]['participants'][tokens[0]]['name'] == 'Alice'


def test_failed_rejoin_does_not_change_state(service):
    tokens = _start(service)
    service.join(tokens[0], 'Alice', connection_id='sock-1')
    before = service.state()

    assert _code(service.join, tokens[0], 'Eve', connection_id='sock-2') == errors.SESSION_SECRET_REQUIRED
    assert _code(service.join, tokens[0], 'Eve', 'nope', connection_id='sock-2') == errors.INVALID_SESSION_SECRET

    after = service.state()
    assert after['revision'] == before['revision']
    assert after['participants'] == before['participants']


def test_concurrent_last_joins_start_writing_once(service):
    count = 8
    tokens = _start(service, count=count)
    barrier = threading.Barrier(count)
    failures = []

    def worker(token):
        barrier.wait()
        try:
            service.join(token, '', connection_id=f'sock-{token}')
        except GameError as exc:
            failures.append(exc.code)

    threads = [threading.Thread(target=worker, args=(t,)) for t in tokens]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    state = service.state()
    assert failures == []
    assert state['status'] == 'WRITING'
    assert len(state['participants']) == count
    assert sum('timer started' in m for m in _log_messages(service)) == 1
    colors = [p['color'] for p in state['participants'].values()]
    assert colors[:4] == ['#BEFA4F', '#E83399', '#5AA7B9', '#F5B700']


def test_single_seat_round_starts_on_first_join(service):
    tokens = _start(service, count=1)
    result = service.join(tokens[0], 'Alice')
    assert result['gameState']['status'] == 'WRITING'
    assert result['gameState']['timerRunning'] is True


def test_update_prompt_by_connection_and_token(service, recorder):
    tokens = _start(service)
    seats = _seat_all(service, tokens)

    ack = service.update_prompt({'prompt': 'a cat in a hat'}, connection_id=f'sock-{tokens[0]}')
    assert ack == {'ok': True, 'token': tokens[0]}
    service.update_prompt('a dog', token=tokens[1].lower(), session_secret=seats[tokens[1]]['sessionSecret'])

    assert recorder.named('prompt:update')[-2:] == [
        {'token': tokens[0], 'prompt': 'a cat in a hat'},
        {'token': tokens[1], 'prompt': 'a dog'},
    ]
    participants = service.state()['participants']
    assert participants[tokens[0]]['prompt'] == 'a cat in a hat'
    assert participants[tokens[1]]['prompt'] == 'a dog'

    assert _code(service.update_prompt, 'x', connection_id='stranger') == errors.UNKNOWN_PARTICIPANT
    assert _code(service.update_prompt, 'x' * 501, token=tokens[0]) == errors.PROMPT_TOO_LONG
    assert _code(service.update_prompt, 'x', token=tokens[0]) == errors.SESSION_SECRET_REQUIRED
    assert _code(service.update_prompt, 'x', token=tokens[0], session_secret='guess') == errors.INVALID_SESSION_SECRET
    assert _code(service.update_prompt, 'x', token='ZZZZ', session_secret='guess') == errors.UNKNOWN_PARTICIPANT
    assert service.state()['participants'][tokens[0]]['prompt'] == 'a cat in a hat'


def test_prompt_rejected_outside_writing(service):
    tokens = _start(service)
    service.join(tokens[0], 'Alice', connection_id='sock-1')
    assert _code(service.update_prompt, 'hi', connection_id='sock-1') == errors.WRONG_PHASE


def test_stop_timer_pauses_countdown(service, clock):
    tokens = _start(service)
    _seat_all(service, tokens)
    clock.advance(15)
    state = service.stop_timer()
    assert state['timerRunning'] is False
    assert state['timer'] == 45

    clock.advance(600)
    state = service.state()
    assert state['status'] == 'WRITING'
    assert state['timer'] == 45


def test_trigger_generation_twice(service, generator):
    tokens = _start(service)
    _seat_all(service, tokens)
    service.update_prompt('a cat', connection_id=f'sock-{tokens[0]}')

    state = service.trigger_generation()
    assert state['status'] == 'GENERATING'
    assert state['generationTriggered'] is True
    assert generator.submitted == ['a cat']
    assert _code(service.trigger_generation) == errors.GENERATION_ALREADY_TRIGGERED
    assert any('no prompt' in m for m in _log_messages(service))


def test_stale_image_is_ignored(service):
    tokens = _start(service)
    _seat_all(service, tokens)
    old_round = service.state()['round']
    new_tokens = _start(service)
    service.join(new_tokens[0], 'Alice')

    service.image_ready(old_round, tokens[0], 'https://img.test/old.webp')

    assert all(p['imageUrl'] is None for p in service.state()['participants'].values())
    assert any('stale' in m for m in _log_messages(service))


def test_round_replaced_during_generation(service, generator):
    tokens = _start(service)
    _seat_all(service, tokens)
    for token in tokens:
        service.update_prompt('a cat', connection_id=f'sock-{token}')
    replaced = []

    def replace_round():
        if not replaced:
            replaced.append(service.start_round('Dogs', 60, 2)['round'])

    generator.on_poll = replace_round
    service.trigger_generation()

    state = service.state()
    assert state['round'] == replaced[0]
    assert state['theme'] == 'Dogs'
    messages = _log_messages(service)
    assert sum('Ignoring stale image' in m for m in messages) == 2
    assert not any('Success for' in m for m in messages)
    assert not any('All generations completed' in m for m in messages)


def test_vote_outside_voting(service):
    tokens = _start(service)
    _seat_all(service, tokens)
    assert _code(service.cast_vote, tokens[0]) == errors.WRONG_PHASE


def test_disconnect_keeps_seat(service):
    tokens = _start(service)
    result = service.join(tokens[0], 'Alice', connection_id='sock-1')

    assert service.disconnect('sock-1') == tokens[0]
    assert service.state()['participants'][tokens[0]]['connected'] is False
    assert service.disconnect('sock-1') is None

    service.join(tokens[0], '', result['sessionSecret'], connection_id='sock-2')
    assert service.state()['participants'][tokens[0]]['connected'] is True


def test_close_session(service):
    tokens = _start(service)
    _seat_all(service, tokens)
    round_no = service.state()['round']

    state = service.close_session()

    assert state['status'] == 'IDLE'
    assert state['round'] == round_no
    assert state['participants'] == {}
    assert _log_messages(service)[0] == 'Session closed'
    assert _code(service.join, tokens[0], 'Alice') == errors.GAME_NOT_STARTED
    assert service.start_round('Dogs', 60, 2)['round'] == round_no + 1


def test_generation_failure_still_settles(service, generator):
    generator.scripts['slow'] = [JobStatus('processing')]
    tokens = _start(service)
    _seat_all(service, tokens)
    service.update_prompt('slow', connection_id=f'sock-{tokens[0]}')
    service.update_prompt('a dog', connection_id=f'sock-{tokens[1]}')

    service.trigger_generation()

    participants = service.state()['participants']
    assert participants[tokens[0]]['imageUrl'] is None
    assert participants[tokens[1]]['imageUrl'].startswith('https://img.test/')
    assert any('All generations completed' in m for m in _log_messages(service))


def test_cats_round_end_to_end(service, clock, recorder):
    state = service.start_round('Cats', 60, 2)
    a, b = state['validTokens']

    service.join(a, 'Alice', connection_id='sock-a')
    state = service.join(b, 'Bob', connection_id='sock-b')['gameState']
    assert state['status'] == 'WRITING'
    assert state['timer'] == 60

    service.update_prompt('a cat astronaut', connection_id='sock-a')
    service.update_prompt('a cat knight', connection_id='sock-b')

    clock.advance(30)
    assert service.state()['timer'] == 30

    clock.advance(30)
    state = service.state()
    assert state['status'] == 'GENERATING'
    assert state['timer'] == 0
    assert all(p['imageUrl'] for p in state['participants'].values())

    state = service.start_voting()
    assert state['status'] == 'VOTING'
    assert state['votingTimer'] == 120

    for token in (a, a, b):
        service.cast_vote(token)

    clock.advance(120)
    state = service.state()
    assert state['status'] == 'ENDED'
    assert state['winners'] == [a]
    assert state['votingTimer'] == 0

    results = service.results()
    assert [p['token'] for p in results['ranking']] == [a, b]
    assert results['winners'] == [a]
    assert _code(service.cast_vote, b) == errors.WRONG_PHASE
    assert recorder.named('admin:log')
