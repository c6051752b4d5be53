from flask import Blueprint, jsonify

from wagerplay import clock

main = Blueprint('main', __name__)

@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the wagerplay match server!'})

@main.route('/api/time')
def server_time():
    # Clients derive a display offset from this; it is never used to authorize anything
    return jsonify({'serverNowMs': clock.now_ms()})
