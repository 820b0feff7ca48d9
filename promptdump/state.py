import logging

logger = logging.getLogger("PromptDump")

from .backends import STORE_ERRORS, CloudBackend, GuestBackend
from .constants import (
    CATEGORY_ALL,
    CATEGORY_FAVORITES,
    CATEGORY_VALUES,
    GUEST_USER_ID,
)
from .documents import DocumentStore
from .filters import filter_prompts
from .identity import LocalIdentityProvider
from .llm import LLM_ERRORS, LLMClient, fallback_analysis, normalize_config
from .local_storage import LocalStorage
from .profiles import load_profiles, resolve_profile, search_profiles
from .records import build_prompt_record, default_profile, guest_profile, normalize_handle
from .sync import SyncAdapter
from .uploads import (
    AVATAR_ASPECT,
    BANNER_ASPECT,
    LocalObjectStorage,
    crop_to_aspect,
    object_path,
    prepare_upload,
)
from .utils import clean_str

MODALS = ("add", "detail", "profile", "community")
FILTER_CATEGORIES = [CATEGORY_ALL, CATEGORY_FAVORITES] + CATEGORY_VALUES
# kind -> (aspect ratio, output width)
CROP_ASPECTS = {"avatar": (AVATAR_ASPECT, 512), "banner": (BANNER_ASPECT, 1920)}


class AppState:
    """Single owner of the application's mutable state.

    Views read attributes and derived properties; every change goes through
    one of the action methods. Actions that reach storage pick the backend
    from the mode flag (guest or cloud) and never update the prompt list by
    hand: the list only changes through the SyncAdapter's snapshots.
    """

    def __init__(
        self,
        documents=None,
        local_storage=None,
        identity=None,
        object_storage=None,
        llm_factory=None,
    ):
        self.local_storage = local_storage or LocalStorage.get_default()
        self.identity = identity or LocalIdentityProvider(self.local_storage)
        self.llm_factory = llm_factory or LLMClient
        self._documents = documents
        self._object_storage = object_storage
        self._guest_backend = None
        self._cloud_backend = None

        # auth
        self.user = None
        self.is_guest = False
        self.auth_checked = False
        self.is_onboarding = False

        # profiles
        self.viewing_uid = None
        self.user_profile = None
        self.current_user_profile = None

        # ui
        self.search = ""
        self.selected_category = CATEGORY_ALL
        self.editing_prompt = None
        self.selected_prompt = None
        self.modals = dict.fromkeys(MODALS, False)
        self.alerts = []
        self.form_error = ""

        self.sync = SyncAdapter()

    # ── collaborators ──

    @property
    def documents(self):
        if self._documents is None:
            self._documents = DocumentStore.get_default()
        return self._documents

    @property
    def object_storage(self):
        if self._object_storage is None:
            self._object_storage = LocalObjectStorage()
        return self._object_storage

    @property
    def backend(self):
        if self.is_guest:
            if self._guest_backend is None:
                self._guest_backend = GuestBackend(self.local_storage)
            return self._guest_backend
        if self._cloud_backend is None:
            self._cloud_backend = CloudBackend(self.documents)
        return self._cloud_backend

    # ── derived values ──

    @property
    def uid(self):
        return (self.user or {}).get("uid")

    @property
    def owner_id(self):
        return GUEST_USER_ID if self.is_guest else self.viewing_uid

    @property
    def prompts(self):
        return list(self.sync.prompts)

    @property
    def loading_prompts(self):
        return self.sync.loading

    @property
    def liked_ids(self):
        return list((self.current_user_profile or {}).get("liked_prompts") or [])

    @property
    def following_ids(self):
        return list((self.current_user_profile or {}).get("following") or [])

    @property
    def filtered_prompts(self):
        liked = self.liked_ids if self.selected_category == CATEGORY_FAVORITES else None
        return filter_prompts(self.prompts, self.search, self.selected_category, liked_ids=liked)

    @property
    def is_read_only(self):
        return not self.is_guest and (self.uid is None or self.uid != self.viewing_uid)

    @property
    def is_following(self):
        return bool(self.viewing_uid) and self.viewing_uid in self.following_ids

    @property
    def needs_login(self):
        return not self.user and not self.is_guest and not self.viewing_uid

    @property
    def share_link(self):
        uid = self.viewing_uid or self.uid
        return f"/?uid={uid}" if uid and not self.is_guest else ""

    def is_liked(self, prompt_id):
        return prompt_id in self.liked_ids

    def alert(self, message, exc=None):
        if exc is not None:
            logger.warning("%s (%s)", message, exc)
        else:
            logger.warning("%s", message)
        self.alerts.append(message)

    def dismiss_alerts(self):
        self.alerts = []

    # ── session ──

    async def start(self, shared_uid=None):
        """Consume a shared profile link, restore the session, open the view."""
        shared_uid = clean_str(shared_uid)
        if shared_uid:
            self.viewing_uid = shared_uid
        self.user = self.identity.current_user()
        if self.user and not self.viewing_uid:
            self.viewing_uid = self.user["uid"]
        self.auth_checked = True
        logger.info(
            "session start user=%s viewing=%s", self.uid or "-", self.viewing_uid or "-"
        )
        await self.refresh()

    async def refresh(self):
        await self.refresh_profiles()
        await self.refresh_view()

    async def sign_in(self, uid, display_name="", photo_url=""):
        previous_uid = self.uid
        self.user = self.identity.sign_in(uid, display_name=display_name, photo_url=photo_url)
        self.is_guest = False
        # A shared profile stays in view; one's own profile follows the new account.
        if not self.viewing_uid or self.viewing_uid in (GUEST_USER_ID, previous_uid):
            self.viewing_uid = self.user["uid"]
        await self.refresh()
        return self.user

    async def sign_out(self):
        self.identity.sign_out()
        self.sync.close()
        self.user = None
        self.is_guest = False
        self.is_onboarding = False
        self.viewing_uid = None
        self.user_profile = None
        self.current_user_profile = None
        self.selected_category = CATEGORY_ALL
        self.editing_prompt = None
        self.selected_prompt = None
        self.modals = dict.fromkeys(MODALS, False)

    async def enter_guest_mode(self):
        self.is_guest = True
        self.viewing_uid = None
        self.current_user_profile = None
        self.is_onboarding = False
        await self.refresh()

    def close(self):
        self.sync.close()

    # ── profiles ──

    def _begin_onboarding(self):
        self.is_onboarding = True
        self.modals["profile"] = True

    async def refresh_profiles(self):
        if self.is_guest:
            self.user_profile = guest_profile()
            self.current_user_profile = None
            return

        try:
            if self.user:
                own = await resolve_profile(self.backend, self.uid, self.user)
                self.current_user_profile = own.profile
                if own.needs_onboarding:
                    self._begin_onboarding()

            if not self.viewing_uid:
                self.user_profile = None
            elif self.viewing_uid == self.uid:
                self.user_profile = self.current_user_profile
            else:
                viewed = await resolve_profile(self.backend, self.viewing_uid, self.user)
                self.user_profile = viewed.profile
        except STORE_ERRORS as exc:
            self.alert("Could not load the profile.", exc)

    async def view_profile(self, uid):
        self.viewing_uid = clean_str(uid) or self.uid
        self.selected_category = CATEGORY_ALL
        await self.refresh()

    async def update_profile(
        self,
        username,
        banner_url=None,
        avatar_url=None,
        banner_source_url=None,
        bio=None,
    ):
        if self.is_guest or not self.user:
            raise PermissionError("Log in to edit your profile")

        self.form_error = ""
        handle = normalize_handle(username)
        if not handle:
            self.form_error = "Please choose a username"
            raise ValueError(self.form_error)

        try:
            holder = await self.backend.find_profile_by_handle(handle)
        except STORE_ERRORS as exc:
            self.alert("Failed to update profile", exc)
            return None
        if holder is not None and holder["uid"] != self.uid:
            self.form_error = "That username is already taken"
            raise ValueError(self.form_error)

        current = self.current_user_profile or default_profile(self.uid, self.user.get("photo_url", ""))
        new_data = {
            # Display name mirrors the handle so real names never show up.
            "display_name": handle,
            "username": handle,
            "banner_url": current.get("banner_url", "") if banner_url is None else clean_str(banner_url),
            "banner_source_url": (
                current.get("banner_source_url", "") if banner_source_url is None else clean_str(banner_source_url)
            ),
            "photo_url": current.get("photo_url", "") if avatar_url is None else clean_str(avatar_url),
        }
        if bio is not None:
            new_data["bio"] = clean_str(bio)

        try:
            await self.backend.set_profile(self.uid, new_data, merge=True)
        except STORE_ERRORS as exc:
            self.alert("Failed to update profile", exc)
            return None

        self.current_user_profile = {**current, **new_data}
        if self.viewing_uid == self.uid:
            self.user_profile = self.current_user_profile
        self.is_onboarding = False
        self.modals["profile"] = False
        logger.info("profile updated for %s (@%s)", self.uid, handle)
        return self.current_user_profile

    async def search_users(self, term):
        if self.is_guest:
            return []
        try:
            return await search_profiles(self.backend, term)
        except STORE_ERRORS as exc:
            self.alert("Search failed.", exc)
            return []

    async def following_profiles(self):
        if self.is_guest or not self.following_ids:
            return []
        try:
            return await load_profiles(self.backend, self.following_ids)
        except STORE_ERRORS as exc:
            self.alert("Could not load the people you follow.", exc)
            return []

    # ── prompt list ──

    async def refresh_view(self):
        try:
            await self.sync.open(
                self.backend,
                self.owner_id,
                self.selected_category,
                liked_ids=self.liked_ids,
            )
        except STORE_ERRORS as exc:
            self.alert("Could not load prompts.", exc)

    async def set_category(self, category):
        category = clean_str(category) or CATEGORY_ALL
        if category not in FILTER_CATEGORIES:
            raise ValueError(f"unknown category: {category}")
        if category == self.selected_category and self.sync.context is not None:
            return
        self.selected_category = category
        await self.refresh_view()

    def set_search(self, text):
        self.search = text or ""

    def _require_writable(self):
        if self.is_guest:
            return
        if not self.user:
            raise PermissionError("Log in or continue as a guest to save prompts")
        if self.is_read_only:
            raise PermissionError("Viewing a shared profile. Read-only mode active.")

    @property
    def writer_id(self):
        return GUEST_USER_ID if self.is_guest else self.uid

    def _require_owner(self, prompt):
        if (prompt or {}).get("user_id") != self.writer_id:
            raise PermissionError("You can only change your own prompts")

    async def save_prompt(
        self,
        text,
        source_url="",
        image_url="",
        tags=None,
        category=None,
        mood="",
        analyze=False,
    ):
        """Create a prompt, or overwrite ``editing_prompt`` when one is set."""
        self._require_writable()
        editing = self.editing_prompt
        if editing is not None:
            self._require_owner(editing)
        self.form_error = ""
        owner = self.writer_id

        try:
            record = build_prompt_record(
                text,
                source_url=source_url,
                image_url=image_url,
                tags=tags,
                category=category,
                mood=mood,
                user_id=owner,
                created_at=(editing or {}).get("created_at"),
            )
        except ValueError as exc:
            self.form_error = str(exc)
            raise

        if analyze:
            analysis = await self.analyze_text(record["text"])
            record["tags"] = list(analysis["tags"])
            record["category"] = analysis["category"]
            record["mood"] = analysis["mood"]

        try:
            prompt_id = await self.backend.save_prompt(record, prompt_id=(editing or {}).get("id"))
        except (KeyError, *STORE_ERRORS) as exc:
            self.alert("Save failed. Check connection.", exc)
            return None

        logger.info("saved prompt %s (%s mode)", prompt_id, self.backend.mode)
        self.editing_prompt = None
        self.modals["add"] = False
        return {**record, "id": prompt_id}

    async def delete_prompt(self, prompt_id, confirm=False):
        """Delete after an explicit confirmation; ``confirm`` may be a callable."""
        self._require_writable()
        try:
            prompt = await self.backend.get_prompt(prompt_id)
        except STORE_ERRORS as exc:
            self.alert("Delete failed. Check connection.", exc)
            return False
        if prompt is None:
            return False
        self._require_owner(prompt)

        confirmed = confirm() if callable(confirm) else bool(confirm)
        if not confirmed:
            return False

        try:
            await self.backend.delete_prompt(prompt_id)
        except STORE_ERRORS as exc:
            self.alert("Delete failed. Check connection.", exc)
            return False

        logger.info("deleted prompt %s", prompt_id)
        self.modals["detail"] = False
        if (self.selected_prompt or {}).get("id") == prompt_id:
            self.selected_prompt = None
        return True

    # ── social ──

    async def _toggle_membership(self, field, value, error_message):
        profile = self.current_user_profile or default_profile(self.uid)
        members = list(profile.get(field) or [])
        try:
            if value in members:
                await self.backend.remove_from_list(self.uid, field, value)
                members = [m for m in members if m != value]
            else:
                await self.backend.add_to_list(self.uid, field, value)
                members.append(value)
        except (KeyError, *STORE_ERRORS) as exc:
            self.alert(error_message, exc)
            return value in members

        self.current_user_profile = {**profile, field: members}
        if self.viewing_uid == self.uid:
            self.user_profile = self.current_user_profile
        return value in members

    async def toggle_follow(self, target_uid=None):
        if self.is_guest or not self.user:
            raise PermissionError("Log in to follow creators")
        target = clean_str(target_uid) or self.viewing_uid
        if not target or target == self.uid:
            return False
        return await self._toggle_membership("following", target, "Could not update follow.")

    async def toggle_like(self, prompt_id):
        if self.is_guest or not self.user:
            raise PermissionError("Log in to like prompts")
        prompt_id = clean_str(prompt_id)
        if not prompt_id:
            raise ValueError("prompt id is required")
        liked = await self._toggle_membership("liked_prompts", prompt_id, "Could not update like.")
        if self.selected_category == CATEGORY_FAVORITES:
            await self.refresh_view()
        return liked

    # ── modals ──

    def open_add(self):
        self.editing_prompt = None
        self.form_error = ""
        self.modals["add"] = True

    def open_edit(self, prompt):
        self._require_writable()
        self._require_owner(prompt)
        self.editing_prompt = dict(prompt)
        self.form_error = ""
        self.modals["detail"] = False
        self.modals["add"] = True

    def open_detail(self, prompt):
        self.selected_prompt = dict(prompt)
        self.modals["detail"] = True

    def open_community(self):
        if self.is_guest or not self.user:
            raise PermissionError("Log in to find creators")
        self.modals["community"] = True

    def open_profile_editor(self):
        if self.is_guest or not self.user:
            raise PermissionError("Log in to edit your profile")
        self.modals["profile"] = True

    def close_profile_editor(self):
        """Returns False while onboarding: the editor stays open until a handle is saved."""
        if self.is_onboarding:
            return False
        self.modals["profile"] = False
        return True

    def close_modals(self):
        for name in MODALS:
            if name == "profile" and self.is_onboarding:
                continue
            self.modals[name] = False
        self.editing_prompt = None

    # ── AI assist & uploads ──

    def _llm_client(self):
        config = normalize_config(self.local_storage.get_llm_config())
        if not config.get("enabled"):
            return None
        return self.llm_factory(config)

    async def analyze_text(self, text):
        client = self._llm_client()
        if client is None:
            logger.info("analysis skipped: llm disabled")
            return fallback_analysis()
        try:
            return await client.analyze_prompt(text)
        except LLM_ERRORS as exc:
            logger.warning("prompt analysis failed: %s", exc)
            return fallback_analysis()

    async def autofill_from_link(self, source_url, text="", image_url=""):
        self.form_error = ""
        result = {"text": text or "", "image_url": image_url or ""}
        if not clean_str(source_url):
            self.form_error = "Paste a link first to use Auto-Fill"
            raise ValueError(self.form_error)

        client = self._llm_client()
        if client is None:
            self.form_error = "AI features are disabled. Enable the LLM in settings."
            return result
        try:
            info = await client.extract_link_info(source_url)
        except LLM_ERRORS as exc:
            logger.warning("link autofill failed: %s", exc)
            self.form_error = "Failed to auto-fill. Please enter manually."
            return result

        found_prompt = (info or {}).get("prompt", "")
        found_image = (info or {}).get("image_url", "")
        if found_image:
            result["image_url"] = found_image
        # Short drafts are treated as placeholders and replaced.
        if found_prompt and len(result["text"]) < 10:
            result["text"] = found_prompt
        if not found_prompt and not found_image:
            self.form_error = "Could not extract info. Try entering manually."
        return result

    async def upload_image(self, data, content_type, kind="preview", crop=None):
        """Store an image; avatars and banners pass ``crop`` (zoom, offset) from the cropper."""
        if self.is_guest or not self.user:
            raise PermissionError("Log in to upload images")
        data, content_type = prepare_upload(data, content_type)
        if crop is not None and kind in CROP_ASPECTS:
            aspect, width = CROP_ASPECTS[kind]
            try:
                data = crop_to_aspect(
                    data,
                    aspect,
                    zoom=crop.get("zoom", 1.0),
                    offset=crop.get("offset", (0, 0)),
                    width=width,
                )
            except OSError as exc:
                raise ValueError("Could not read the image") from exc
            content_type = "image/jpeg"
        path = object_path(self.uid, kind)
        try:
            url = self.object_storage.upload(path, data, content_type)
        except OSError as exc:
            self.alert("Upload failed. Please check your connection.", exc)
            return None
        logger.info("uploaded %s for %s", kind, self.uid)
        return url

    # ── view snapshot ──

    def snapshot(self):
        return {
            "user": self.user,
            "is_guest": self.is_guest,
            "auth_checked": self.auth_checked,
            "needs_login": self.needs_login,
            "is_onboarding": self.is_onboarding,
            "is_read_only": self.is_read_only,
            "is_following": self.is_following,
            "viewing_uid": self.viewing_uid,
            "share_link": self.share_link,
            "user_profile": self.user_profile,
            "current_user_profile": self.current_user_profile,
            "search": self.search,
            "selected_category": self.selected_category,
            "loading_prompts": self.loading_prompts,
            "sync_state": self.sync.state.value,
            "prompt_count": len(self.sync.prompts),
            "prompts": self.filtered_prompts,
            "liked_ids": self.liked_ids,
            "editing_prompt": self.editing_prompt,
            "selected_prompt": self.selected_prompt,
            "modals": dict(self.modals),
            "alerts": list(self.alerts),
            "form_error": self.form_error,
        }
