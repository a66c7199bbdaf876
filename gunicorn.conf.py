import os

# App factory; the engine is wired once per worker process
wsgi_app = "app:create_app()"

# Preload so configuration errors fail the master at boot
preload_app = True

# The 'thread' queue runner keeps its timer in-process; run one worker with it
workers = int(os.environ.get("WEB_CONCURRENCY", "1"))

# Bind
bind = f"0.0.0.0:{os.environ.get('PORT', '8080')}"

# Logging
accesslog = "-"
errorlog = "-"
loglevel = "info"

# Timeout
timeout = 30
