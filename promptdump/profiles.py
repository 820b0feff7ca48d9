import asyncio
import logging

logger = logging.getLogger("PromptDump")

from .constants import HANDLE_SEARCH_LIMIT
from .records import default_profile, is_profile_complete, placeholder_profile


class ProfileResolution:
    __slots__ = ("profile", "needs_onboarding", "is_placeholder", "created")

    def __init__(self, profile, needs_onboarding=False, is_placeholder=False, created=False):
        self.profile = profile
        self.needs_onboarding = needs_onboarding
        self.is_placeholder = is_placeholder
        self.created = created

    def __repr__(self):
        return (
            f"ProfileResolution(uid={self.profile.get('uid')!r}, "
            f"needs_onboarding={self.needs_onboarding}, is_placeholder={self.is_placeholder})"
        )


async def resolve_profile(backend, target_uid, viewer=None):
    """Produce a displayable profile for ``target_uid``.

    - existing profile: returned as is; onboarding is required when it is
      the viewer's own profile and has no handle yet.
    - missing and owned by the viewer (first login): a default profile is
      written and onboarding is forced.
    - missing foreign profile: an "unknown user" placeholder, nothing written.
    """
    viewer_uid = (viewer or {}).get("uid")
    is_self = bool(viewer_uid) and viewer_uid == target_uid

    profile = await backend.get_profile(target_uid)
    if profile is not None:
        return ProfileResolution(profile, needs_onboarding=is_self and not is_profile_complete(profile))

    if is_self:
        profile = default_profile(target_uid, photo_url=(viewer or {}).get("photo_url", ""))
        await backend.set_profile(target_uid, profile, merge=True)
        logger.info("created default profile for %s", target_uid)
        return ProfileResolution(profile, needs_onboarding=True, created=True)

    logger.debug("no profile for %s, using placeholder", target_uid)
    return ProfileResolution(placeholder_profile(target_uid), is_placeholder=True)


async def search_profiles(backend, term, limit=HANDLE_SEARCH_LIMIT):
    term = (term or "").strip().lower()
    if not term:
        return []
    return await backend.find_profiles_by_prefix(term, limit=limit)


async def load_profiles(backend, uids):
    """Fetch several profiles concurrently, dropping the ones that do not exist."""
    if not uids:
        return []
    results = await asyncio.gather(*(backend.get_profile(uid) for uid in uids))
    return [p for p in results if p is not None]
