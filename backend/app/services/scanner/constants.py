"""Constants for the accessibility scanner."""

HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]

# Tag -> implicit landmark role
IMPLICIT_LANDMARKS = {
    "header": "banner",
    "nav": "navigation",
    "main": "main",
    "aside": "complementary",
    "footer": "contentinfo",
    "search": "search",
}

LANDMARK_ROLES = [
    "banner", "navigation", "main", "complementary", "contentinfo",
    "form", "search", "region",
]

# Roles collected into the accessibility tree
INTERACTIVE_ROLES = [
    "button", "link", "checkbox", "radio", "tab", "menuitem", "switch",
    "textbox", "combobox", "listbox", "option", "slider", "dialog",
]

FOCUSABLE_TAGS = ["a", "button", "input", "select", "textarea", "summary", "iframe"]

# Inputs that never need a text label
UNLABELED_INPUT_TYPES = ["hidden", "submit", "reset", "button", "image"]

# Boilerplate link phrases that say nothing about the destination
VAGUE_LINK_PHRASES = ["click here", "read more", "learn more", "more", "link", "here"]

CLICK_HANDLER_ATTRS = ["onclick", "ng-click", "@click", "v-on:click", "(click)"]
KEY_HANDLER_ATTRS = ["onkeydown", "onkeyup", "onkeypress", "ng-keydown", "@keydown", "v-on:keydown", "(keydown)"]

CAPTION_TRACK_KINDS = ["captions", "subtitles"]

# Linked resources that are not HTML documents
SKIP_EXTENSIONS = [
    ".pdf", ".zip", ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp",
    ".mp4", ".mp3", ".webm", ".doc", ".docx", ".xls", ".xlsx", ".ppt",
    ".pptx", ".css", ".js", ".xml", ".json", ".ico",
]

# Markup fingerprints for framework detection (checked in order)
FRAMEWORK_SIGNATURES = [
    ("nextjs", ["__next_data__", "/_next/static"]),
    ("nuxt", ["__nuxt", "/_nuxt/"]),
    ("gatsby", ["___gatsby"]),
    ("angular", ["ng-version", "ng-app"]),
    ("svelte", ["svelte-"]),
    ("vue", ["data-v-", "v-cloak", "id=\"app\" data-server-rendered"]),
    ("react", ["data-reactroot", "data-reactid", "id=\"root\""]),
    ("wordpress", ["wp-content", "wp-includes"]),
    ("shopify", ["cdn.shopify.com"]),
]

# Snapshot bounds
MAX_VISIBLE_TEXT_CHARS = 20000
MAX_SURROUNDING_TEXT_CHARS = 200
MAX_ELEMENT_HTML_CHARS = 500
MAX_COLOR_SAMPLES = 50
