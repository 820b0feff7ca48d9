import json
import re
import time
from datetime import datetime, timezone


def now_iso():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def now_millis():
    return int(time.time() * 1000)


_ws_re = re.compile(r"\s+")


def normalize_text(s):
    if s is None:
        return ""
    s = str(s).strip()
    s = _ws_re.sub(" ", s)
    return s


def clean_str(s):
    """Trim a string field without touching inner whitespace (prompt bodies keep their line breaks)."""
    if s is None:
        return ""
    return str(s).strip()


def clean_str_list(values):
    out = []
    for v in values or []:
        v = normalize_text(v)
        if v:
            out.append(v)
    return out


def json_dumps(obj):
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
