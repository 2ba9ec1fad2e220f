import logging
import os

from bforce_store import create_app

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
