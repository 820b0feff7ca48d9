import logging

logger = logging.getLogger("PromptDump")

from .constants import SESSION_STORAGE_KEY
from .utils import clean_str


class LocalIdentityProvider:
    """Session holder standing at the identity-provider boundary.

    Whoever performs the actual sign-in hands the resulting uid to
    sign_in(); the session is kept in local storage so it survives a
    restart, the way a hosted provider restores its session on load.
    """

    def __init__(self, local_storage):
        self.local_storage = local_storage

    def current_user(self):
        session = self.local_storage.get_json(SESSION_STORAGE_KEY)
        if not isinstance(session, dict) or not clean_str(session.get("uid")):
            return None
        return {
            "uid": clean_str(session.get("uid")),
            "display_name": clean_str(session.get("display_name")),
            "photo_url": clean_str(session.get("photo_url")),
        }

    def sign_in(self, uid, display_name="", photo_url=""):
        uid = clean_str(uid)
        if not uid:
            raise ValueError("uid is required to sign in")
        user = {
            "uid": uid,
            "display_name": clean_str(display_name),
            "photo_url": clean_str(photo_url),
        }
        self.local_storage.set_json(SESSION_STORAGE_KEY, user)
        logger.info("signed in as %s", uid)
        return user

    def sign_out(self):
        self.local_storage.remove_item(SESSION_STORAGE_KEY)
        logger.info("signed out")
