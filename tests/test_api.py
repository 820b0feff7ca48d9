import io
import tempfile
from pathlib import Path

from aiohttp import FormData
from aiohttp.test_utils import AioHTTPTestCase
from PIL import Image

from promptdump.api import create_app
from promptdump.documents import DocumentStore
from promptdump.local_storage import LocalStorage
from promptdump.state import AppState
from promptdump.uploads import LocalObjectStorage


class PromptDumpApiTests(AioHTTPTestCase):
    async def get_application(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        root = Path(self.temp_dir.name)
        self.local_storage = LocalStorage(str(root / "local_storage.db"))
        self.state = AppState(
            documents=DocumentStore(str(root / "promptdump.db")),
            local_storage=self.local_storage,
            object_storage=LocalObjectStorage(root=str(root / "uploads")),
        )
        return create_app(self.state)

    async def _sign_in(self, uid="u1", handle="alice"):
        resp = await self.client.post("/promptdump/session", json={"uid": uid})
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        self.assertTrue(body["is_onboarding"])
        resp = await self.client.put("/promptdump/profile", json={"username": handle})
        self.assertEqual(resp.status, 200)

    async def test_health_and_initial_state(self):
        resp = await self.client.get("/promptdump/health")
        body = await resp.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["mode"], "cloud")
        self.assertEqual(body["data_dir"], self.temp_dir.name)

        resp = await self.client.get("/promptdump/state")
        body = await resp.json()
        self.assertTrue(body["auth_checked"])
        self.assertTrue(body["needs_login"])
        self.assertEqual(body["prompts"], [])

    async def test_guest_flow(self):
        resp = await self.client.post("/promptdump/session/guest")
        self.assertEqual(resp.status, 200)

        resp = await self.client.post("/promptdump/prompts", json={"text": "a cat", "tags": "cute, cat"})
        self.assertEqual(resp.status, 201)
        saved = await resp.json()
        self.assertEqual(saved["user_id"], "guest")
        self.assertEqual(saved["tags"], ["cute", "cat"])

        resp = await self.client.get("/promptdump/prompts")
        body = await resp.json()
        self.assertEqual([p["text"] for p in body["items"]], ["a cat"])

        resp = await self.client.post("/promptdump/prompts", json={"text": "  "})
        self.assertEqual(resp.status, 400)

        resp = await self.client.post(f"/promptdump/prompts/{saved['id']}/like")
        self.assertEqual(resp.status, 403)

    async def test_signed_out_write_is_forbidden(self):
        resp = await self.client.post("/promptdump/prompts", json={"text": "a cat"})
        self.assertEqual(resp.status, 403)

        resp = await self.client.post("/promptdump/prompts", data="not json")
        self.assertEqual(resp.status, 400)

    async def test_edit_and_delete(self):
        await self._sign_in()
        resp = await self.client.post("/promptdump/prompts", json={"text": "first draft"})
        saved = await resp.json()

        resp = await self.client.put(f"/promptdump/prompts/{saved['id']}", json={"text": "final", "category": "Vector"})
        self.assertEqual(resp.status, 201)
        edited = await resp.json()
        self.assertEqual(edited["id"], saved["id"])
        self.assertEqual(edited["category"], "Vector")

        resp = await self.client.put("/promptdump/prompts/nope", json={"text": "x"})
        self.assertEqual(resp.status, 404)

        resp = await self.client.delete(f"/promptdump/prompts/{saved['id']}")
        self.assertEqual(resp.status, 400)
        resp = await self.client.delete(f"/promptdump/prompts/{saved['id']}?confirm=1")
        self.assertEqual(await resp.json(), {"deleted": True})

        resp = await self.client.get("/promptdump/prompts")
        self.assertEqual((await resp.json())["items"], [])

    async def test_shared_link_is_read_only(self):
        await self._sign_in("u-bob", "bob")
        await self.client.post("/promptdump/prompts", json={"text": "bob's prompt"})
        await self.client.delete("/promptdump/session")
        await self._sign_in("u-alice", "alice")

        resp = await self.client.get("/?uid=u-bob")
        body = await resp.json()
        self.assertTrue(body["is_read_only"])
        self.assertEqual([p["text"] for p in body["prompts"]], ["bob's prompt"])
        self.assertEqual(body["share_link"], "/?uid=u-bob")

        resp = await self.client.post("/promptdump/prompts", json={"text": "nope"})
        self.assertEqual(resp.status, 403)

        resp = await self.client.post("/promptdump/users/u-bob/follow")
        self.assertEqual(await resp.json(), {"following": True, "following_ids": ["u-bob"]})

        resp = await self.client.get("/promptdump/following")
        self.assertEqual([p["username"] for p in (await resp.json())["items"]], ["bob"])

        resp = await self.client.get("/promptdump/users/search?q=BO")
        self.assertEqual([p["uid"] for p in (await resp.json())["items"]], ["u-bob"])

    async def test_taken_handle(self):
        await self._sign_in("u1", "alice")
        await self.client.delete("/promptdump/session")
        await self.client.post("/promptdump/session", json={"uid": "u2"})

        resp = await self.client.put("/promptdump/profile", json={"username": "alice"})
        self.assertEqual(resp.status, 400)
        self.assertEqual(await resp.json(), {"error": "That username is already taken"})

    async def test_llm_config_masks_key(self):
        resp = await self.client.put(
            "/promptdump/llm/config",
            json={"enabled": True, "api_key": "sk-abcdef", "model": "qwen"},
        )
        body = await resp.json()
        self.assertEqual(body["api_key"], "sk*****ef")

        resp = await self.client.put("/promptdump/llm/config", json={"api_key": "sk*****ef", "timeout": 10})
        self.assertEqual((await resp.json())["timeout"], 10)
        self.assertEqual(self.local_storage.get_llm_config()["api_key"], "sk-abcdef")

    async def test_analyze_without_llm_uses_fallback(self):
        resp = await self.client.post("/promptdump/llm/analyze", json={"text": "a cat"})
        self.assertEqual(await resp.json(), {"tags": [], "category": "Unsorted", "mood": "Unknown"})

        resp = await self.client.post("/promptdump/llm/extract_link", json={"source_url": ""})
        self.assertEqual(resp.status, 400)

    async def test_upload_and_serve_file(self):
        buf = io.BytesIO()
        Image.new("RGB", (32, 32), (0, 128, 255)).save(buf, format="PNG")
        png = buf.getvalue()

        def _form():
            form = FormData()
            form.add_field("file", png, filename="a.png", content_type="image/png")
            form.add_field("kind", "avatar")
            return form

        resp = await self.client.post("/promptdump/uploads", data=_form())
        self.assertEqual(resp.status, 403)

        await self._sign_in()
        resp = await self.client.post("/promptdump/uploads", data=_form())
        self.assertEqual(resp.status, 201)
        url = (await resp.json())["url"]
        self.assertTrue(url.startswith("/promptdump/files/users/u1/avatar_"))

        resp = await self.client.get(url)
        self.assertEqual(resp.status, 200)
        self.assertEqual(resp.content_type, "image/png")
        self.assertEqual(await resp.read(), png)

        resp = await self.client.get("/promptdump/files/users/u1/missing")
        self.assertEqual(resp.status, 404)

    async def test_banner_upload_is_cropped(self):
        await self._sign_in()
        buf = io.BytesIO()
        Image.new("RGB", (600, 600), (10, 200, 10)).save(buf, format="PNG")

        form = FormData()
        form.add_field("file", buf.getvalue(), filename="b.png", content_type="image/png")
        form.add_field("kind", "banner")
        form.add_field("zoom", "1.5")
        form.add_field("offset_x", "40")
        resp = await self.client.post("/promptdump/uploads", data=form)
        self.assertEqual(resp.status, 201)

        resp = await self.client.get((await resp.json())["url"])
        self.assertEqual(resp.content_type, "image/jpeg")
        with Image.open(io.BytesIO(await resp.read())) as img:
            self.assertEqual(img.size, (1920, 1080))

    async def test_prompt_detail_reports_like(self):
        await self._sign_in()
        resp = await self.client.post("/promptdump/prompts", json={"text": "a cat"})
        saved = await resp.json()

        resp = await self.client.post(f"/promptdump/prompts/{saved['id']}/like")
        self.assertEqual(await resp.json(), {"liked": True, "liked_ids": [saved["id"]]})

        resp = await self.client.get(f"/promptdump/prompts/{saved['id']}")
        body = await resp.json()
        self.assertTrue(body["liked"])
        self.assertEqual(body["text"], "a cat")

        resp = await self.client.get("/promptdump/prompts?category=Favorites&q=CAT")
        self.assertEqual([p["id"] for p in (await resp.json())["items"]], [saved["id"]])

    async def test_foreign_prompt_writes_are_forbidden(self):
        await self._sign_in("u-bob", "bob")
        resp = await self.client.post("/promptdump/prompts", json={"text": "bob's prompt"})
        saved = await resp.json()
        await self.client.delete("/promptdump/session")
        await self._sign_in("u-alice", "alice")

        resp = await self.client.put(f"/promptdump/prompts/{saved['id']}", json={"text": "hijacked"})
        self.assertEqual(resp.status, 403)

        resp = await self.client.delete(f"/promptdump/prompts/{saved['id']}?confirm=1")
        self.assertEqual(resp.status, 403)

        prompt = await self.state.backend.get_prompt(saved["id"])
        self.assertEqual(prompt["text"], "bob's prompt")
        self.assertEqual(prompt["user_id"], "u-bob")
