from flask_socketio import join_room, leave_room, emit
from wagerplay import socketio, clock

# Rooms only carry "something changed" hints. Clients re-read over HTTP,
# which is where timeouts and settlement are evaluated.


def _room(match_id: str) -> str:
    return f"match:{match_id}"


def handle_connect():
    emit('connected', {'message': 'Connected to /ws', 'serverNowMs': clock.now_ms()})


def handle_join_match(data):
    match_id = (data or {}).get('match_id')
    if not match_id:
        emit('error', {'message': 'match_id is required'})
        return
    join_room(_room(match_id))
    emit('joined', {'room': _room(match_id), 'serverNowMs': clock.now_ms()})


def handle_leave_match(data):
    match_id = (data or {}).get('match_id')
    if not match_id:
        emit('error', {'message': 'match_id is required'})
        return
    leave_room(_room(match_id))
    emit('left', {'room': _room(match_id)})


def handle_ping(data):
    payload = dict(data or {})
    payload['serverNowMs'] = clock.now_ms()
    emit('pong', payload)


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('join_match', handle_join_match, namespace='/ws')
    socketio.on_event('leave_match', handle_leave_match, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')

    if testing:
        socketio.on_event('connect', handle_connect, namespace='/')
        socketio.on_event('join_match', handle_join_match, namespace='/')
        socketio.on_event('leave_match', handle_leave_match, namespace='/')
        socketio.on_event('ping', handle_ping, namespace='/')
