import os

# keep app.main from probing for Firestore credentials at import time
os.environ.setdefault("USE_INMEMORY", "1")
