"""Read-only HTTP status API for tinderbox.

Routes are thin wrappers over the core modules in tinderbox/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
