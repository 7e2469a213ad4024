import os
import json
import logging
import firebase_admin
from firebase_admin import credentials

from app.core.settings import settings

logger = logging.getLogger("app.config")


def init_firebase():
    """Initialize Firebase admin SDK for bearer-token verification.

    Behavior:
    - If FIREBASE_CERT_JSON env var is present, parse it as JSON and use it.
    - Else if FIREBASE_CERT_PATH points at an existing file, use that path.
    - Else, do nothing; only the development mock tokens will authenticate.
    """
    if firebase_admin._apps:
        return

    fb_json = os.environ.get("FIREBASE_CERT_JSON")
    if fb_json:
        try:
            cred = credentials.Certificate(json.loads(fb_json))
            firebase_admin.initialize_app(cred)
            logger.info("Firebase initialized from FIREBASE_CERT_JSON")
            return
        except (ValueError, IOError) as e:
            # Fall through to file-based loading which may still work
            logger.error(f"Failed to init Firebase from FIREBASE_CERT_JSON: {e}")

    fb_path = settings.firebase_cert_path
    if fb_path and os.path.exists(fb_path):
        try:
            firebase_admin.initialize_app(credentials.Certificate(fb_path))
            logger.info(f"Firebase initialized from {fb_path}")
            return
        except (ValueError, IOError) as e:
            logger.error(f"Failed to init Firebase from path {fb_path}: {e}")

    logger.warning("No Firebase credentials found; only development tokens will authenticate")
