from .constants import CATEGORY_ALL, CATEGORY_FAVORITES


def sort_newest_first(prompts):
    # sorted() is stable, so equal timestamps keep their incoming order.
    return sorted(prompts, key=lambda p: int(p.get("created_at") or 0), reverse=True)


def matches_search(prompt, search):
    query = (search or "").lower()
    if not query:
        return True
    if query in str(prompt.get("text") or "").lower():
        return True
    return any(query in str(tag).lower() for tag in prompt.get("tags") or [])


def matches_category(prompt, category):
    if not category or category in (CATEGORY_ALL, CATEGORY_FAVORITES):
        return True
    return prompt.get("category") == category


def filter_prompts(prompts, search="", category=CATEGORY_ALL, liked_ids=None):
    """Derive the visible list: text-or-tag match AND category match, newest first.

    Favorites never narrows by category; when ``liked_ids`` is given it keeps
    only those ids, so an unlike hides the card before the favorites batch is
    fetched again.
    """
    liked = set(liked_ids) if (category == CATEGORY_FAVORITES and liked_ids is not None) else None
    out = []
    for p in prompts or []:
        if liked is not None and p.get("id") not in liked:
            continue
        if not matches_search(p, search):
            continue
        if not matches_category(p, category):
            continue
        out.append(p)
    return sort_newest_first(out)
