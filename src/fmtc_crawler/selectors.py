"""
Selectors and text patterns for the FMTC portal.

Each tuple is an ordered fallback list: the first candidate that matches
wins. Order reflects how current the markup is, most recent first.
"""
import re

# Login page
USERNAME_INPUT = ("#username", 'input[name="username"]')
PASSWORD_INPUT = ("#password", 'input[name="password"]')
LOGIN_SUBMIT = ('button[type="submit"]', ".btn.fmtc-primary-btn")
LOGIN_FORM = ("form#form", 'form[name="form"]', 'form[action="/cp/login"]')
LOGIN_ERROR = (".error", ".alert-danger", ".login-error", ".invalid-feedback", ".text-danger")

# Authenticated chrome
LOGGED_IN_MARKERS = (".user-menu", ".logout", '[href*="logout"]')
LOGOUT_LINKS = ('a[href*="logout"]', ".logout", 'button:has-text("Logout")')

# reCAPTCHA widget
RECAPTCHA_WIDGET = (".g-recaptcha", "#rc-anchor-container", ".recaptcha-checkbox", 'iframe[src*="recaptcha"]')
RECAPTCHA_RESPONSE = "#g-recaptcha-response, textarea[name=\"g-recaptcha-response\"]"
SITE_KEY_ATTRIBUTE_SELECTOR = ".g-recaptcha[data-sitekey], [data-sitekey]"
SITE_KEY_SCRIPT_PATTERN = re.compile(r"['\"](6[0-9A-Za-z_-]{39})['\"]")

# Search form
SEARCH_FORM = (
    "#programSearchForm",
    'form[action*="program_directory"]',
    'form[action*="search"]',
    ".search-form",
)
SEARCH_TEXT = (
    'input[name="q"]',
    'input[name="search"]',
    'input[name="keyword"]',
    'input[type="search"]',
    "#search_text",
)
NETWORK_SELECT = ('select[name="network_id"]', "#network_select")
PROVIDER_SELECT = ('select[name="omp_provider"]', "#omp_select")
CATEGORY_SELECT = ("#cat", 'select[name="cat"]')
COUNTRY_SELECT = ('select[name="country"]', "#country_select")
SHIP_TO_SELECT = ('select[name="ships_to"]', "#shipping_select")
DISPLAY_RADIO = 'input[type="radio"][value="{value}"], input[type="radio"][value="{name}"]'
CHOSEN_CONTAINER = "#cat_chosen"
CHOSEN_TOGGLE = "#cat_chosen .chosen-single"
CHOSEN_OPTIONS = "#cat_chosen .chosen-drop .chosen-results li.active-result"
CHOSEN_OPTION_BY_INDEX = '#cat_chosen li.active-result[data-option-array-index="{index}"]'
SEARCH_SUBMIT = (
    'button.fmtc-primary-btn[type="submit"]',
    'button[type="submit"]',
    'input[type="submit"]',
    'button:has-text("Search")',
    ".search-button",
    "#search_submit",
)

# Results table
RESULT_ROWS = (
    "#program_directory_table tbody tr",
    "table.dataTable tbody tr",
    "table.fmtc-table tbody tr",
    "table.table-striped tbody tr",
    "table tbody tr",
)
RESULTS_INFO = ("#program_directory_table_info", ".dataTables_info")
PAGINATION = ("#program_directory_table_paginate", ".dataTables_paginate")
NEXT_BUTTON = (
    "#program_directory_table_paginate .paginate_button.next:not(.disabled)",
    ".dataTables_paginate .paginate_button.next:not(.disabled)",
)
PAGE_LENGTH_SELECT = "#program_directory_table_length select"
MIN_RESULT_COLUMNS = 6

SHOWING_PATTERN = re.compile(r"showing\s+([\d,]+)\s+to\s+([\d,]+)\s+of\s+([\d,]+)", re.IGNORECASE)
RESULT_COUNT_PATTERNS = (
    re.compile(r"([\d,]+)\s*results?", re.IGNORECASE),
    re.compile(r"([\d,]+)\s*programs?", re.IGNORECASE),
    re.compile(r"([\d,]+)\s*merchants?", re.IGNORECASE),
    re.compile(r"found\s*([\d,]+)", re.IGNORECASE),
    re.compile(r"of\s+([\d,]+)\s+entries", re.IGNORECASE),
)

# Merchant detail page
DETAIL_READY = (
    "a[href^='http'][target='_blank']",
    ".merchant-info",
    ".program-info",
    ".list-group-item",
    "table",
)
DETAIL_PATH_PATTERNS = (
    re.compile(r"/cp/program_directory/details/m/(\d+)"),
    re.compile(r"/program_directory/m/(\d+)"),
    re.compile(r"/m/(\d+)/"),
)
FMTC_ID_PATTERN = re.compile(r"FMTC\s*ID[:\s]*(\d+)", re.IGNORECASE)
NETWORK_COMPOSITE_PATTERN = re.compile(r"^(.+?)\s*\((\d+)\)$")

# Failure phrases shown by the portal, grouped by meaning
ERROR_PATTERNS = {
    "invalid_credentials": (
        "invalid credentials",
        "incorrect username",
        "incorrect password",
        "login failed",
        "authentication failed",
    ),
    "account_locked": (
        "account locked",
        "account suspended",
        "too many attempts",
        "account disabled",
    ),
    "captcha_required": (
        "captcha required",
        "verification required",
        "prove you are human",
        "captcha",
    ),
    "session_expired": (
        "session expired",
        "please login again",
        "authentication timeout",
    ),
    "access_denied": (
        "access denied",
        "unauthorized",
        "forbidden",
        "permission denied",
    ),
}
