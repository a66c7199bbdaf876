import re

# Tracking identifier: 256-bit random value, lowercase hex
TRACKING_ID_PATTERN = re.compile(r"^[a-f0-9]{64}$")

# Full session / dedup token payload: id:ts[,id:ts]*
SESSION_TOKEN_PATTERN = re.compile(r"^[a-f0-9]{64}:\d{1,10}(,[a-f0-9]{64}:\d{1,10})*$")

# Cookie names
SESSION_COOKIE = "_ad_clicks"
DEDUP_COOKIE = "_ad_last_conv"
PENDING_COOKIE = "_aah_pending"
PENDING_COOKIE_MAX_AGE = 60  # seconds
PENDING_FRAGMENT_KEY = "_aah"

# Query parameter carrying the tracking id when a host rewrites the route
TRACKING_QUERY_PARAM = "ad_attr_id"

# Tracking definition status
DEFINITION_STATUS_ACTIVE = "active"
DEFINITION_STATUS_INACTIVE = "inactive"

# Report queue job status
JOB_STATUS_PENDING = "pending"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_DONE = "done"
JOB_STATUS_FAILED = "failed"

JOB_STATUSES = (
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_DONE,
    JOB_STATUS_FAILED,
)

# Max stored length for campaign dimensions and platform click ids
MAX_DIMENSION_LENGTH = 255

# Campaign dimension resolution order: stored value > utm_* > mtm_* (Matomo Tag Manager)
CAMPAIGN_PARAM_ALIASES = {
    "utm_source": ("utm_source", "mtm_source"),
    "utm_medium": ("utm_medium", "mtm_medium"),
    "utm_campaign": ("utm_campaign", "mtm_campaign"),
}

# Per-visit dimensions: incoming value wins, definition value is the fallback
PER_VISIT_PARAM_ALIASES = {
    "utm_content": ("utm_content", "mtm_content"),
    "utm_term": ("utm_term", "mtm_keyword", "mtm_kwd"),
    "utm_id": ("utm_id", "mtm_cid"),
    "utm_source_platform": ("utm_source_platform", "mtm_group"),
}

# User-Agent substrings identifying automated clients (case-insensitive)
BOT_SIGNATURES = (
    "bot",  # LinkedInBot, AdsBot-Google, Googlebot, Bingbot, ...
    "crawl",
    "spider",
    "slurp",
    "facebookexternalhit",
    "mediapartners-google",
    "yahoo",
    "curl",
    "wget",
    "python-requests",
    "headlesschrome",
    "lighthouse",
    "gtmetrix",
)

# Consent hand-off endpoint
SET_COOKIE_RATE_LIMIT = "10 per minute"


# Enumerated settings
CONSENT_DEFAULTS = ("granted", "denied", "undetermined")
PENDING_TRANSPORTS = ("cookie", "fragment")
REDIRECT_METHODS = ("302", "js")
WEIGHTING_STRATEGIES = ("last_click", "linear", "time_decay")
QUEUE_RUNNERS = ("worker", "thread")
