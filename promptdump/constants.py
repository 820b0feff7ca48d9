from enum import Enum

APP_NAME = "PromptDump"
SCHEMA_VERSION = "1"

GUEST_USER_ID = "guest"
GUEST_STORAGE_KEY = "promptdump.guest_prompts"
SESSION_STORAGE_KEY = "promptdump.session"
LLM_CONFIG_KEY = "llm_config"

PROMPTS_COLLECTION = "prompts"
USERS_COLLECTION = "users"

DEFAULT_BANNER = (
    "https://images.unsplash.com/photo-1579546929518-9e396f3cc809"
    "?q=80&w=2070&auto=format&fit=crop"
)

DEFAULT_MOOD = "Neutral"
MAX_HANDLE_LENGTH = 20
MAX_ANALYSIS_TAGS = 5
HANDLE_SEARCH_LIMIT = 5


class Category(str, Enum):
    PHOTOREALISTIC = "Photorealistic"
    ILLUSTRATION = "Illustration"
    THREE_D = "3D Render"
    VECTOR = "Vector"
    PAINTING = "Painting"
    OTHER = "Other"
    UNSORTED = "Unsorted"


CATEGORY_VALUES = [c.value for c in Category]

# Filter-only pseudo categories.
CATEGORY_ALL = "All"
CATEGORY_FAVORITES = "Favorites"
