import re

from .constants import (
    CATEGORY_VALUES,
    DEFAULT_BANNER,
    DEFAULT_MOOD,
    GUEST_USER_ID,
    MAX_HANDLE_LENGTH,
    Category,
)
from .utils import clean_str, clean_str_list, now_millis

_handle_re = re.compile(r"[^a-z0-9_]")


def normalize_category(value):
    value = clean_str(value.value if isinstance(value, Category) else value)
    if not value:
        return Category.UNSORTED.value
    if value in CATEGORY_VALUES:
        return value
    lowered = {c.lower(): c for c in CATEGORY_VALUES}
    return lowered.get(value.lower(), Category.OTHER.value)


def parse_tags_input(text):
    if isinstance(text, (list, tuple)):
        return clean_str_list(text)
    return [t.strip() for t in str(text or "").split(",") if t.strip()]


def normalize_handle(value):
    handle = _handle_re.sub("", str(value or "").lower())
    return handle[:MAX_HANDLE_LENGTH]


def build_prompt_record(
    text,
    source_url="",
    image_url="",
    tags=None,
    category=None,
    mood="",
    user_id=GUEST_USER_ID,
    created_at=None,
):
    text = clean_str(text)
    if not text:
        raise ValueError("Please enter a prompt")

    return {
        "text": text,
        "source_url": clean_str(source_url),
        "image_url": clean_str(image_url),
        "tags": parse_tags_input(tags),
        "category": normalize_category(category),
        "mood": clean_str(mood) or DEFAULT_MOOD,
        "created_at": int(created_at) if created_at else now_millis(),
        "user_id": clean_str(user_id) or GUEST_USER_ID,
    }


def normalize_prompt(doc, doc_id=None):
    doc = dict(doc or {})
    tags = doc.get("tags")
    if not isinstance(tags, list):
        tags = []
    try:
        created_at = int(doc.get("created_at") or 0)
    except (TypeError, ValueError):
        created_at = 0
    return {
        "id": str(doc_id or doc.get("id") or ""),
        "text": str(doc.get("text") or ""),
        "source_url": str(doc.get("source_url") or ""),
        "image_url": str(doc.get("image_url") or ""),
        "tags": [str(t) for t in tags],
        "category": normalize_category(doc.get("category")),
        "mood": str(doc.get("mood") or ""),
        "created_at": created_at,
        "user_id": str(doc.get("user_id") or ""),
    }


def normalize_profile(doc, uid=None):
    doc = dict(doc or {})
    following = doc.get("following")
    liked = doc.get("liked_prompts")
    return {
        "uid": str(uid or doc.get("uid") or ""),
        "display_name": str(doc.get("display_name") or ""),
        "username": str(doc.get("username") or ""),
        "photo_url": str(doc.get("photo_url") or ""),
        "banner_url": str(doc.get("banner_url") or ""),
        "banner_source_url": str(doc.get("banner_source_url") or ""),
        "bio": str(doc.get("bio") or ""),
        "following": [str(x) for x in following] if isinstance(following, list) else [],
        "liked_prompts": [str(x) for x in liked] if isinstance(liked, list) else [],
    }


def default_profile(uid, photo_url=""):
    return normalize_profile(
        {
            "uid": uid,
            "display_name": "Anonymous",
            "username": "",
            "photo_url": photo_url or "",
            "banner_url": DEFAULT_BANNER,
            "following": [],
            "liked_prompts": [],
        }
    )


def placeholder_profile(uid):
    return normalize_profile(
        {
            "uid": uid,
            "display_name": "Anonymous User",
            "username": "unknown",
            "banner_url": DEFAULT_BANNER,
        }
    )


def guest_profile():
    return normalize_profile(
        {
            "uid": GUEST_USER_ID,
            "display_name": "Guest",
            "username": "guest",
            "banner_url": DEFAULT_BANNER,
        }
    )


def is_profile_complete(profile):
    return bool(profile and clean_str(profile.get("username")))
