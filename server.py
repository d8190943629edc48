# ============================
# EVENTLET MONKEY PATCH (MUST BE FIRST)
# ============================
import eventlet
eventlet.monkey_patch()

import logging
import os

from app import create_app
from models import db
from notifications import socketio

logger = logging.getLogger("rapidred.server")

app = create_app()


if __name__ == "__main__":
    with app.app_context():
        db.create_all()

    port = int(os.getenv("PORT", 5000))
    logger.info("RapidRed server starting on port %d", port)
    socketio.run(app, host="0.0.0.0", port=port)
