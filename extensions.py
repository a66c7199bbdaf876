from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Configured in app.py via init_app. Only decorated endpoints are limited
# (the consent hand-off); the click route and conversion triggers never 429.
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri="memory://",
    strategy="fixed-window",
    headers_enabled=True,
)
