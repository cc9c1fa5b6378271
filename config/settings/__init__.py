# config/settings/__init__.py
import os

# DJANGO_ENV picks the settings module: local (default), test or prod.
_env = os.getenv("DJANGO_ENV", "local").strip().lower()

if _env == "prod":
    from .prod import *  # noqa
elif _env == "test":
    from .test import *  # noqa
else:
    from .local import *  # noqa
