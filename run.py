from telemed import create_app, socketio

app = create_app()

if __name__ == '__main__':
    # Gunakan socketio.run, bukan app.run agar chat & signaling jalan
    socketio.run(app, debug=True, port=5000)
