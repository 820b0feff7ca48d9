import json
import logging
import os

from aiohttp import web

logger = logging.getLogger("PromptDump")

from .llm import LLM_ERRORS, normalize_config
from .state import AppState
from .uploads import MAX_UPLOAD_BYTES, UPLOAD_KINDS, guess_content_type

STATE_KEY = web.AppKey("state", AppState)
TRUTHY = {"1", "true", "yes", "on"}


def _json_response(obj, status=200):
    return web.Response(
        status=status,
        text=json.dumps(obj, ensure_ascii=False),
        content_type="application/json",
    )


def _bad_request(msg):
    return _json_response({"error": msg}, status=400)


def _forbidden(msg):
    return _json_response({"error": msg}, status=403)


def _not_found(msg="Prompt not found"):
    return _json_response({"error": msg}, status=404)


def _sanitize_llm_config(config):
    safe = dict(config or {})
    key = safe.get("api_key", "")
    if key and len(key) > 4:
        safe["api_key"] = key[:2] + "*" * (len(key) - 4) + key[-2:]
    return safe


async def _read_json(request):
    try:
        payload = await request.json()
    except ValueError:
        return None, _bad_request("Request body is not valid JSON")
    if not isinstance(payload, dict):
        return None, _bad_request("Request body must be a JSON object")
    return payload, None


def _state_response(state, status=200, **extra):
    body = state.snapshot()
    body.update(extra)
    return _json_response(body, status=status)


async def _find_prompt(state, prompt_id):
    for prompt in state.prompts:
        if prompt["id"] == prompt_id:
            return prompt
    return await state.backend.get_prompt(prompt_id)


def setup_routes(app):
    routes = web.RouteTableDef()

    @routes.get("/promptdump/health")
    async def health(request):
        state = request.app[STATE_KEY]
        return _json_response(
            {
                "ok": True,
                "mode": state.backend.mode,
                "data_dir": os.path.dirname(state.local_storage.path),
            }
        )

    @routes.get("/")
    @routes.get("/promptdump/view")
    async def index(request):
        # Shared profile links look like /?uid=<uid>.
        state = request.app[STATE_KEY]
        uid = request.query.get("uid", "").strip()
        if uid and uid != state.viewing_uid:
            await state.view_profile(uid)
        return _state_response(state)

    @routes.get("/promptdump/state")
    async def get_state(request):
        state = request.app[STATE_KEY]
        search = request.query.get("search")
        if search is not None:
            state.set_search(search)
        category = request.query.get("category")
        if category is not None:
            try:
                await state.set_category(category)
            except ValueError as exc:
                return _bad_request(str(exc))
        return _state_response(state)

    @routes.post("/promptdump/alerts/dismiss")
    async def dismiss_alerts(request):
        state = request.app[STATE_KEY]
        state.dismiss_alerts()
        return _state_response(state)

    # ── session ──

    @routes.post("/promptdump/session")
    async def sign_in(request):
        state = request.app[STATE_KEY]
        payload, error = await _read_json(request)
        if error:
            return error
        try:
            await state.sign_in(
                payload.get("uid", ""),
                display_name=payload.get("display_name", ""),
                photo_url=payload.get("photo_url", ""),
            )
        except ValueError as exc:
            return _bad_request(str(exc))
        return _state_response(state)

    @routes.delete("/promptdump/session")
    async def sign_out(request):
        state = request.app[STATE_KEY]
        await state.sign_out()
        return _state_response(state)

    @routes.post("/promptdump/session/guest")
    async def guest(request):
        state = request.app[STATE_KEY]
        await state.enter_guest_mode()
        return _state_response(state)

    # ── prompts ──

    @routes.get("/promptdump/prompts")
    async def list_prompts(request):
        state = request.app[STATE_KEY]
        if "q" in request.query:
            state.set_search(request.query["q"])
        if "category" in request.query:
            try:
                await state.set_category(request.query["category"])
            except ValueError as exc:
                return _bad_request(str(exc))
        return _json_response(
            {
                "items": state.filtered_prompts,
                "total": len(state.prompts),
                "loading": state.loading_prompts,
            }
        )

    @routes.post("/promptdump/prompts")
    async def create_prompt(request):
        state = request.app[STATE_KEY]
        payload, error = await _read_json(request)
        if error:
            return error
        state.open_add()
        return await _save(state, payload)

    @routes.put("/promptdump/prompts/{prompt_id}")
    async def update_prompt(request):
        state = request.app[STATE_KEY]
        prompt_id = request.match_info["prompt_id"]
        payload, error = await _read_json(request)
        if error:
            return error
        prompt = await _find_prompt(state, prompt_id)
        if prompt is None:
            return _not_found()
        try:
            state.open_edit(prompt)
        except PermissionError as exc:
            return _forbidden(str(exc))
        return await _save(state, payload)

    async def _save(state, payload):
        try:
            saved = await state.save_prompt(
                payload.get("text", ""),
                source_url=payload.get("source_url", ""),
                image_url=payload.get("image_url", ""),
                tags=payload.get("tags"),
                category=payload.get("category"),
                mood=payload.get("mood", ""),
                analyze=bool(payload.get("analyze")),
            )
        except PermissionError as exc:
            return _forbidden(str(exc))
        except ValueError as exc:
            return _bad_request(str(exc))
        if saved is None:
            return _json_response({"error": state.alerts[-1] if state.alerts else "Save failed"}, status=500)
        return _json_response(saved, status=201)

    @routes.get("/promptdump/prompts/{prompt_id}")
    async def get_prompt(request):
        state = request.app[STATE_KEY]
        prompt = await _find_prompt(state, request.match_info["prompt_id"])
        if prompt is None:
            return _not_found()
        state.open_detail(prompt)
        return _json_response({**prompt, "liked": state.is_liked(prompt["id"])})

    @routes.delete("/promptdump/prompts/{prompt_id}")
    async def delete_prompt(request):
        state = request.app[STATE_KEY]
        prompt_id = request.match_info["prompt_id"]
        confirm = request.query.get("confirm", "").strip().lower() in TRUTHY
        if await _find_prompt(state, prompt_id) is None:
            return _not_found()
        try:
            deleted = await state.delete_prompt(prompt_id, confirm=confirm)
        except PermissionError as exc:
            return _forbidden(str(exc))
        if not deleted and not confirm:
            return _bad_request("Deleting a prompt needs confirm=1")
        return _json_response({"deleted": deleted})

    @routes.post("/promptdump/prompts/{prompt_id}/like")
    async def like_prompt(request):
        state = request.app[STATE_KEY]
        try:
            liked = await state.toggle_like(request.match_info["prompt_id"])
        except PermissionError as exc:
            return _forbidden(str(exc))
        except ValueError as exc:
            return _bad_request(str(exc))
        return _json_response({"liked": liked, "liked_ids": state.liked_ids})

    # ── profiles & community ──

    @routes.get("/promptdump/profile")
    async def get_profile(request):
        state = request.app[STATE_KEY]
        uid = request.query.get("uid", "").strip()
        if uid:
            await state.view_profile(uid)
        return _json_response(
            {
                "profile": state.user_profile,
                "is_read_only": state.is_read_only,
                "is_following": state.is_following,
                "is_onboarding": state.is_onboarding,
                "share_link": state.share_link,
            }
        )

    @routes.put("/promptdump/profile")
    async def put_profile(request):
        state = request.app[STATE_KEY]
        payload, error = await _read_json(request)
        if error:
            return error
        try:
            profile = await state.update_profile(
                payload.get("username", ""),
                banner_url=payload.get("banner_url"),
                avatar_url=payload.get("avatar_url"),
                banner_source_url=payload.get("banner_source_url"),
                bio=payload.get("bio"),
            )
        except PermissionError as exc:
            return _forbidden(str(exc))
        except ValueError as exc:
            return _bad_request(str(exc))
        if profile is None:
            return _json_response({"error": "Failed to update profile"}, status=500)
        return _json_response(profile)

    @routes.post("/promptdump/users/{uid}/follow")
    async def follow(request):
        state = request.app[STATE_KEY]
        try:
            following = await state.toggle_follow(request.match_info["uid"])
        except PermissionError as exc:
            return _forbidden(str(exc))
        return _json_response({"following": following, "following_ids": state.following_ids})

    @routes.get("/promptdump/users/search")
    async def search_users(request):
        state = request.app[STATE_KEY]
        items = await state.search_users(request.query.get("q", ""))
        return _json_response({"items": items})

    @routes.get("/promptdump/following")
    async def following(request):
        state = request.app[STATE_KEY]
        items = await state.following_profiles()
        return _json_response({"items": items})

    # ── AI assist ──

    @routes.post("/promptdump/llm/analyze")
    async def llm_analyze(request):
        state = request.app[STATE_KEY]
        payload, error = await _read_json(request)
        if error:
            return error
        text = str(payload.get("text", "") or "").strip()
        if not text:
            return _bad_request("Please enter a prompt")
        return _json_response(await state.analyze_text(text))

    @routes.post("/promptdump/llm/extract_link")
    async def llm_extract_link(request):
        state = request.app[STATE_KEY]
        payload, error = await _read_json(request)
        if error:
            return error
        try:
            result = await state.autofill_from_link(
                payload.get("source_url", ""),
                text=payload.get("text", ""),
                image_url=payload.get("image_url", ""),
            )
        except ValueError as exc:
            return _bad_request(str(exc))
        return _json_response({**result, "form_error": state.form_error})

    @routes.post("/promptdump/llm/test")
    async def llm_test(request):
        state = request.app[STATE_KEY]
        config = normalize_config(state.local_storage.get_llm_config())
        client = state.llm_factory(config)
        try:
            result = await client.test_connection()
        except LLM_ERRORS as exc:
            logger.warning("llm test failed: %s", exc)
            return _json_response({"ok": False, "error": str(exc)}, status=502)
        return _json_response(result)

    @routes.get("/promptdump/llm/config")
    async def get_llm_config(request):
        state = request.app[STATE_KEY]
        return _json_response(_sanitize_llm_config(state.local_storage.get_llm_config()))

    @routes.put("/promptdump/llm/config")
    async def put_llm_config(request):
        state = request.app[STATE_KEY]
        payload, error = await _read_json(request)
        if error:
            return error
        current = state.local_storage.get_llm_config()
        # The masked key comes back unchanged from the settings form.
        if payload.get("api_key") == _sanitize_llm_config(current).get("api_key"):
            payload.pop("api_key")
        current.update(payload)
        current = normalize_config(current)
        state.local_storage.set_llm_config(current)
        return _json_response(_sanitize_llm_config(current))

    # ── uploads ──

    @routes.post("/promptdump/uploads")
    async def upload(request):
        state = request.app[STATE_KEY]
        form = await request.post()
        field = form.get("file")
        if field is None or not hasattr(field, "file"):
            return _bad_request("Missing file field")
        kind = str(form.get("kind") or "preview")
        if kind not in UPLOAD_KINDS:
            return _bad_request(f"Unknown upload kind: {kind}")
        crop = None
        if "zoom" in form:
            try:
                crop = {
                    "zoom": float(form.get("zoom") or 1),
                    "offset": (float(form.get("offset_x") or 0), float(form.get("offset_y") or 0)),
                }
            except ValueError:
                return _bad_request("zoom and offsets must be numbers")
        data = field.file.read()
        try:
            url = await state.upload_image(data, field.content_type, kind=kind, crop=crop)
        except PermissionError as exc:
            return _forbidden(str(exc))
        except ValueError as exc:
            return _bad_request(str(exc))
        if url is None:
            return _json_response({"error": "Upload failed"}, status=500)
        return _json_response({"url": url, "kind": kind}, status=201)

    @routes.get("/promptdump/files/{path:.+}")
    async def get_file(request):
        state = request.app[STATE_KEY]
        try:
            data = state.object_storage.read(request.match_info["path"])
        except ValueError:
            return _bad_request("Invalid path")
        except KeyError:
            return _not_found("File not found")
        return web.Response(
            body=data,
            content_type=guess_content_type(data),
            headers={"Cache-Control": "public, max-age=86400"},
        )

    app.add_routes(routes)


async def _on_startup(app):
    await app[STATE_KEY].start()


async def _on_cleanup(app):
    app[STATE_KEY].close()


def create_app(state=None, start=True):
    # Room for originals above the resize threshold; they are downscaled before storage.
    app = web.Application(client_max_size=MAX_UPLOAD_BYTES * 4)
    app[STATE_KEY] = state or AppState()
    setup_routes(app)
    if start:
        app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app
