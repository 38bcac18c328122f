"""FastAPI web application for svc-imagegen.

Read-only HTTP views over build records. All business logic is delegated
to core modules in svc_imagegen/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
