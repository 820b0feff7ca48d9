import asyncio
import json
import logging
import re

import aiohttp

from .constants import CATEGORY_VALUES, DEFAULT_MOOD, MAX_ANALYSIS_TAGS, Category

logger = logging.getLogger("PromptDump")

# Categories the model may choose from; "Unsorted" is reserved for failures.
ANALYSIS_CATEGORIES = [c for c in CATEGORY_VALUES if c != Category.UNSORTED.value]

ANALYSIS_SYSTEM_PROMPT = (
    "You analyze AI image generation prompts.\n"
    f"Return a JSON object with exactly these keys:\n"
    f'  "tags": up to {MAX_ANALYSIS_TAGS} keywords describing the style, subject or medium,\n'
    f'  "category": one of {", ".join(ANALYSIS_CATEGORIES)},\n'
    '  "mood": a single adjective describing the mood (e.g. Dark, Cheerful, Serene).\n'
    "Return only the JSON object, no other text.\n\n"
    'Example: {"tags": ["felt", "toy", "cute"], "category": "3D Render", "mood": "Playful"}'
)

LINK_SYSTEM_PROMPT = (
    "You extract AI image generation prompts from social media posts.\n"
    "Find two things in the post:\n"
    "1. The AI image generation prompt text contained in the post.\n"
    "2. The direct URL of the main image attached to the post. Do not return "
    "profile pictures or icon URLs.\n\n"
    "Format your response exactly like this:\n"
    "PROMPT_FOUND: [the extracted prompt text]\n"
    "IMAGE_FOUND: [the direct image url]\n\n"
    "If you cannot find one of them, leave that field empty after the label."
)

DEFAULT_LLM_CONFIG = {
    "enabled": False,
    "base_url": "http://localhost:1234",
    "model": "",
    "api_key": "",
    "timeout": 30,
}

_prompt_label_re = re.compile(r"PROMPT_FOUND:[ \t]*(.*)", re.IGNORECASE)
_image_label_re = re.compile(r"IMAGE_FOUND:[ \t]*(.*)", re.IGNORECASE)
_url_re = re.compile(r"https?://[^\s\"'\]\)>]+")

LLM_ERRORS = (RuntimeError, aiohttp.ClientError)


def normalize_config(config):
    merged = {**DEFAULT_LLM_CONFIG, **(config or {})}
    merged["enabled"] = bool(merged.get("enabled"))
    merged["base_url"] = str(merged.get("base_url") or DEFAULT_LLM_CONFIG["base_url"]).strip()
    merged["model"] = str(merged.get("model") or "").strip()
    merged["api_key"] = str(merged.get("api_key") or "").strip()
    try:
        merged["timeout"] = max(1, min(300, int(merged.get("timeout") or 30)))
    except (TypeError, ValueError):
        merged["timeout"] = DEFAULT_LLM_CONFIG["timeout"]
    return {k: merged[k] for k in DEFAULT_LLM_CONFIG}


def fallback_analysis():
    return {"tags": [], "category": Category.UNSORTED.value, "mood": "Unknown"}


def _load_json_object(text):
    text = (text or "").strip()
    try:
        result = json.loads(text)
        if isinstance(result, dict):
            return result
    except json.JSONDecodeError:
        pass

    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        try:
            result = json.loads(match.group())
            if isinstance(result, dict):
                return result
        except json.JSONDecodeError:
            pass
    return None


def parse_analysis_response(text):
    """Turn the model's JSON answer into tags/category/mood, or None when unreadable."""
    data = _load_json_object(text)
    if data is None:
        return None

    tags = data.get("tags") or []
    if not isinstance(tags, list):
        tags = [tags]
    tags = [str(t).strip() for t in tags if str(t).strip()][:MAX_ANALYSIS_TAGS]

    category = str(data.get("category") or "").strip()
    if category not in ANALYSIS_CATEGORIES:
        category = Category.OTHER.value

    mood = str(data.get("mood") or "").strip() or DEFAULT_MOOD
    return {"tags": tags, "category": category, "mood": mood}


def parse_link_response(text):
    prompt = ""
    image_url = ""
    text = text or ""

    match = _prompt_label_re.search(text)
    if match and match.group(1):
        prompt = match.group(1).strip()
        if prompt.startswith("[") and prompt.endswith("]"):
            prompt = prompt[1:-1].strip()

    match = _image_label_re.search(text)
    if match and match.group(1):
        url_match = _url_re.search(match.group(1))
        if url_match:
            image_url = url_match.group(0)

    return {"prompt": prompt, "image_url": image_url}


class LLMClient:
    def __init__(self, config: dict):
        self.config = normalize_config(config)

    @property
    def _endpoint(self) -> str:
        base = self.config["base_url"].rstrip("/")
        if base.endswith("/v1"):
            return f"{base}/chat/completions"
        return f"{base}/v1/chat/completions"

    @property
    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        api_key = self.config.get("api_key", "").strip()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def _chat(self, system_prompt: str, user_prompt: str, temperature=0.4, max_tokens=512) -> str:
        body: dict = {
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        model = self.config.get("model") or ""
        if model:
            body["model"] = model

        timeout = aiohttp.ClientTimeout(total=self.config.get("timeout", 30))
        try:
            async with aiohttp.ClientSession(timeout=timeout, trust_env=False) as session:
                async with session.post(self._endpoint, json=body, headers=self._headers) as resp:
                    if resp.status != 200:
                        text = await resp.text()
                        raise RuntimeError(
                            f"LLM returned an error ({resp.status}): {text[:200] if text.strip() else '(empty response)'}"
                        )
                    data = await resp.json()
        except aiohttp.ClientConnectorError:
            raise RuntimeError(f"Cannot reach the LLM at {self._endpoint}")
        except asyncio.TimeoutError:
            raise RuntimeError("LLM request timed out")

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise RuntimeError(f"Unexpected LLM response: {json.dumps(data, ensure_ascii=False)[:300]}")

    async def analyze_prompt(self, prompt_text: str) -> dict:
        prompt_text = (prompt_text or "").strip()
        if not prompt_text:
            raise ValueError("Please enter a prompt")
        content = await self._chat(
            ANALYSIS_SYSTEM_PROMPT,
            f'Analyze the following AI image generation prompt.\n\nPrompt: "{prompt_text}"',
        )
        result = parse_analysis_response(content)
        if result is None:
            raise RuntimeError(f"Could not parse the analysis: {content[:300]}")
        return result

    async def extract_link_info(self, url: str) -> dict:
        url = (url or "").strip()
        if not url:
            return {}
        content = await self._chat(
            LINK_SYSTEM_PROMPT,
            f"Look up this social media post and extract its prompt and image: {url}",
            temperature=0.2,
        )
        logger.debug("link extraction raw response: %s", content[:500])
        return parse_link_response(content)

    async def test_connection(self) -> dict:
        body: dict = {
            "messages": [{"role": "user", "content": "Hi"}],
            "max_tokens": 8,
        }
        model = self.config.get("model") or ""
        if model:
            body["model"] = model

        endpoint = self._endpoint
        timeout_sec = min(self.config.get("timeout", 30), 15)
        logger.info("[LLM test] endpoint=%s model=%r timeout=%ds", endpoint, model, timeout_sec)

        timeout = aiohttp.ClientTimeout(total=timeout_sec)
        try:
            async with aiohttp.ClientSession(timeout=timeout, trust_env=False) as session:
                async with session.post(endpoint, json=body, headers=self._headers) as resp:
                    logger.info("[LLM test] response status=%d", resp.status)
                    if resp.status != 200:
                        text = await resp.text()
                        logger.warning("[LLM test] error body: %s", text[:500])
                        raise RuntimeError(
                            f"Server returned {resp.status}: {text[:200] if text.strip() else '(empty response, is a model loaded?)'}"
                        )
                    data = await resp.json()
        except aiohttp.ClientConnectorError as e:
            logger.error("[LLM test] connect failed: %s", e)
            raise RuntimeError(f"Cannot reach {endpoint}, check the address and that the server is running")
        except asyncio.TimeoutError:
            logger.error("[LLM test] timeout after %ds", timeout_sec)
            raise RuntimeError("Connection timed out, check the address or raise the timeout")

        resp_model = data.get("model", model or "(unknown)")
        logger.info("[LLM test] success, model=%s", resp_model)
        return {"ok": True, "model": resp_model}
