from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
socketio = SocketIO(async_mode=None)


def create_app(config_class=Config, services=None):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    allowed_origins = flask_app.config.get('ALLOWED_ORIGINS') or []

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from quecomemos import models  # noqa: F401
    from quecomemos.errors import SessionError
    from quecomemos.services import Services

    if services is None:
        from quecomemos.achievements import LoggingAchievementNotifier
        from quecomemos.events import SocketIOEventSink
        services = Services.build(events=SocketIOEventSink(socketio), achievements=LoggingAchievementNotifier())
    flask_app.extensions['quecomemos'] = services

    from quecomemos.api.voting import voting
    from quecomemos.api.games import games
    from quecomemos.api.consumptions import consumptions
    flask_app.register_blueprint(voting, url_prefix='/api/voting')
    flask_app.register_blueprint(games, url_prefix='/api/games')
    flask_app.register_blueprint(consumptions, url_prefix='/api/consumptions')

    @flask_app.errorhandler(SessionError)
    def handle_session_error(exc):
        if exc.status_code >= 500:
            flask_app.logger.error(f"[error] kind={exc.kind} {exc.message}")
        return jsonify(exc.to_dict()), exc.status_code

    from quecomemos.socketio_events import register_socketio_handlers
    register_socketio_handlers()

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from quecomemos.seed import seed_demo_data
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            group = seed_demo_data()
            print(f'Database has been reset and seeded! group={group.id}')

    @click.command('sweep-sessions')
    def sweep_sessions_command():
        """Runs one scheduler tick against the configured database."""
        with flask_app.app_context():
            report = flask_app.extensions['quecomemos'].scheduler.tick()
            print(report.summary())

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(sweep_sessions_command)

    return flask_app
