import os
import json
from typing import Optional
from fastapi import Request
from core.config import (
    logger,
    FIREBASE_PROJECT_ID,
    FIREBASE_SERVICE_ACCOUNT_JSON,
    FIREBASE_SERVICE_ACCOUNT_JSON_PATH,
    FIREBASE_ADMIN_CLIENT_EMAIL,
    FIREBASE_ADMIN_PRIVATE_KEY,
    USERS_COLLECTION,
)
from utils.eduzz import IdentityExistsError, UpstreamDependencyError

STUDENT_ROLE = "student"

firebase_enabled = False
try:
    import firebase_admin
    from firebase_admin import auth as fb_auth, credentials as fb_credentials

    _options = {"projectId": FIREBASE_PROJECT_ID} if FIREBASE_PROJECT_ID else None
    if not getattr(firebase_admin, "_apps", []):
        if FIREBASE_SERVICE_ACCOUNT_JSON:
            cred = fb_credentials.Certificate(json.loads(FIREBASE_SERVICE_ACCOUNT_JSON))
            firebase_admin.initialize_app(cred, _options)
        elif FIREBASE_SERVICE_ACCOUNT_JSON_PATH and os.path.isfile(FIREBASE_SERVICE_ACCOUNT_JSON_PATH):
            if not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
                os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = FIREBASE_SERVICE_ACCOUNT_JSON_PATH
            cred = fb_credentials.Certificate(FIREBASE_SERVICE_ACCOUNT_JSON_PATH)
            firebase_admin.initialize_app(cred, _options)
        elif FIREBASE_ADMIN_CLIENT_EMAIL and FIREBASE_ADMIN_PRIVATE_KEY and FIREBASE_PROJECT_ID:
            cred = fb_credentials.Certificate({
                "type": "service_account",
                "project_id": FIREBASE_PROJECT_ID,
                "client_email": FIREBASE_ADMIN_CLIENT_EMAIL,
                "private_key": FIREBASE_ADMIN_PRIVATE_KEY,
                "token_uri": "https://oauth2.googleapis.com/token",
            })
            firebase_admin.initialize_app(cred, _options)
        else:
            firebase_admin.initialize_app(options=_options)
    firebase_enabled = True
    logger.info("Firebase Admin initialized")
except Exception as ex:
    logger.warning(f"Firebase Admin not initialized: {ex}")
    fb_auth = None  # type: ignore

fb_fs = None
if firebase_enabled:
    try:
        from firebase_admin import firestore as _fb_firestore
        fb_fs = _fb_firestore.client()
    except Exception as ex:
        logger.warning(f"Firestore client not available: {ex}")
        fb_fs = None


def get_uid_from_request(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    if not token:
        return None
    if not firebase_enabled or not fb_auth:
        return None
    try:
        decoded = fb_auth.verify_id_token(token)
        return decoded.get("uid")
    except Exception as ex:
        logger.warning(f"Token verification failed: {ex}")
        return None


def get_user_email_from_uid(uid: str) -> Optional[str]:
    try:
        if not firebase_enabled or not fb_auth:
            return None
        user = fb_auth.get_user(uid)
        return (getattr(user, "email", None) or "").lower()
    except Exception as ex:
        logger.warning(f"get_user_email_from_uid failed: {ex}")
        return None


class FirebaseIdentityProvider:
    """Firebase Auth as the system of record for student accounts."""

    def __init__(self, auth_client=None, db=None):
        self.auth = auth_client if auth_client is not None else fb_auth
        self.db = db if db is not None else fb_fs

    def _require(self):
        if not self.auth:
            raise UpstreamDependencyError("identity provider unavailable")

    def find_uid_by_email(self, email: str) -> Optional[str]:
        self._require()
        try:
            user = self.auth.get_user_by_email(email)
            return getattr(user, "uid", None)
        except self.auth.UserNotFoundError:
            return None
        except Exception as ex:
            raise UpstreamDependencyError(f"identity lookup failed: {ex}") from ex

    def create_student(self, email: str) -> str:
        """Create a passwordless account; the password is set later via the setup link."""
        self._require()
        try:
            user = self.auth.create_user(email=email, email_verified=False)
        except self.auth.EmailAlreadyExistsError as ex:
            raise IdentityExistsError(email) from ex
        except Exception as ex:
            raise UpstreamDependencyError(f"identity create failed: {ex}") from ex
        uid = user.uid
        try:
            self.auth.set_custom_user_claims(uid, {"role": STUDENT_ROLE})
            if self.db is not None:
                self.db.collection(USERS_COLLECTION).document(uid).set(
                    {"email": email, "role": STUDENT_ROLE},
                    merge=True,
                )
        except Exception as ex:
            # The account exists; the role marker is re-applied on the next create attempt only.
            logger.warning(f"[identity] role marker failed for uid={uid}: {ex}")
        logger.info(f"[identity] created student uid={uid}")
        return uid

    def credential_setup_link(self, email: str, continue_url: str = "") -> str:
        self._require()
        settings = None
        if continue_url:
            settings = self.auth.ActionCodeSettings(url=continue_url, handle_code_in_app=False)
        try:
            return self.auth.generate_password_reset_link(email, action_code_settings=settings)
        except Exception as ex:
            raise UpstreamDependencyError(f"credential link failed: {ex}") from ex


_identity_provider: Optional[FirebaseIdentityProvider] = None


def get_identity_provider() -> FirebaseIdentityProvider:
    global _identity_provider
    if _identity_provider is None:
        _identity_provider = FirebaseIdentityProvider()
    return _identity_provider
