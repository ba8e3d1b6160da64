"""Jinja2 templates for the HTML pages."""
from pathlib import Path

from fastapi.templating import Jinja2Templates

TEMPLATES_DIR = Path(__file__).parent / "templates"

templates = Jinja2Templates(directory=TEMPLATES_DIR)


def render_fragment(name: str, **context: object) -> str:
    """Render a template to a string, for partial updates pushed over the live stream."""
    return templates.get_template(name).render(**context)
