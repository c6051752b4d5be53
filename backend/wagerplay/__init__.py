from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config, ledger=None):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # The ledger is an external collaborator; tests hand in a fake one
    if ledger is None:
        from wagerplay.ledger import SolanaLedger
        ledger = SolanaLedger.from_config(flask_app.config)
    flask_app.extensions['ledger'] = ledger

    from wagerplay.main import main
    flask_app.register_blueprint(main)

    from wagerplay.api.matches import matches
    flask_app.register_blueprint(matches, url_prefix='/api/matches')

    from wagerplay.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    @click.command('db-reset')
    def db_reset_command():
        """Drops and recreates all tables."""
        import wagerplay.models  # noqa: F401
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            print('Database has been reset!')

    @click.command('prune-expired')
    def prune_expired_command():
        """Deletes expired sessions, payment markers and locks."""
        from wagerplay import clock
        from wagerplay.store import prune_expired
        with flask_app.app_context():
            removed = prune_expired(clock.now_ms())
            print(f'Pruned {removed} expired rows.')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(prune_expired_command)

    return flask_app
