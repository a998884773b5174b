from quecomemos import create_app, socketio
from quecomemos.services import get_services

app = create_app()

if __name__ == '__main__':
    # Sweep expired sessions while the server runs
    get_services(app).scheduler.start(app)
    # Use SocketIO server to enable websockets in dev
    socketio.run(app, debug=True, use_reloader=False)
