# widgets.py
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

WIDGET_DIR = Path(__file__).resolve().parent / "widget_templates"
WIDGET_MIME_TYPE = "text/html+skybridge"
CALENDAR_WIDGET_URI = "ui://widget/calendar-widget.html"

_URI_PATTERN = re.compile(r"^ui://widget/([A-Za-z0-9_-]+)\.html$")


class WidgetCatalog:
    """UI templates exposed as protocol resources and referenced by tool metadata."""

    def __init__(self, base_url: str, widget_dir: Path = WIDGET_DIR):
        self.base_url = base_url
        self.widget_dir = widget_dir
        self._widgets: Dict[str, str] = {"calendar-widget": "Calendar Widget"}

    def list_resources(self) -> List[dict]:
        return [
            {
                "uri": f"ui://widget/{name}.html",
                "name": title,
                "mimeType": WIDGET_MIME_TYPE,
                "_meta": {
                    "openai/widgetCSP": {
                        "connect_domains": [self.base_url, "https://accounts.google.com"],
                        "resource_domains": [self.base_url],
                        "redirect_domains": ["https://accounts.google.com"],
                    },
                },
            }
            for name, title in self._widgets.items()
        ]

    def read(self, uri: Optional[str]) -> dict:
        """Resolve a ui://widget/<name>.html URI; unknown URIs yield no contents."""
        match = _URI_PATTERN.match(uri or "")
        if not match or match.group(1) not in self._widgets:
            logger.warning(f"Unknown widget resource requested: {uri}")
            return {"contents": []}

        path = self.widget_dir / f"{match.group(1)}.html"
        if not path.exists():
            logger.error(f"Widget template missing on disk: {path}")
            return {"contents": []}
        return {
            "contents": [
                {
                    "uri": uri,
                    "mimeType": WIDGET_MIME_TYPE,
                    "text": path.read_text(encoding="utf-8"),
                }
            ]
        }
