from app.main import app
import os

if __name__ == "__main__":
    # Importing app.main prepares directories and the schema and starts the
    # browser session in the background. PORT may be set by the host.
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, threaded=True)
