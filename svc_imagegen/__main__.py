"""Allow running the CLI with ``python -m svc_imagegen``."""

from svc_imagegen.cli import app

app(prog_name="imagegen")
