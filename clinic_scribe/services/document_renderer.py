"""
Renders finalized session fields into a self-contained, printable HTML document
"""

import re
from typing import List, Optional, Sequence
from jinja2 import Environment, PackageLoader, StrictUndefined, select_autoescape
from markupsafe import Markup, escape

from clinic_scribe.core.logging import get_logger
from clinic_scribe.models.domain import DocumentFields

logger = get_logger(__name__)

IMAGE_PATTERN = re.compile(r"\.(jpg|jpeg|png|gif|bmp|webp)$", re.IGNORECASE)
VIDEO_PATTERN = re.compile(r"\.(mp4|mov|avi|mkv|webm)$", re.IGNORECASE)

TEMPLATE_NAME = "medical_document.html"


def nl2br(value: Optional[str]) -> Markup:
    """Escapes free text and turns line breaks into <br>."""
    text = (value or "").replace("\r\n", "\n")
    return Markup(str(escape(text)).replace("\n", "<br>"))


def classify_media(url: str) -> str:
    """image, video or other, decided by file extension only"""
    if IMAGE_PATTERN.search(url):
        return "image"
    if VIDEO_PATTERN.search(url):
        return "video"
    return "other"


class DocumentRenderer:
    """Deterministic HTML renderer for clinical documents"""

    def __init__(self, environment: Environment = None):
        self.env = environment or Environment(
            loader=PackageLoader("clinic_scribe", "templates"),
            autoescape=select_autoescape(["html", "xml"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["nl2br"] = nl2br
        self.template = self.env.get_template(TEMPLATE_NAME)

    @staticmethod
    def media_items(media_urls: Sequence[str]) -> List[dict]:
        items = []
        for index, url in enumerate(media_urls, start=1):
            caption = url.split("/")[-1] or f"Media {index}"
            items.append({"url": url, "kind": classify_media(url), "caption": caption, "index": index})
        return items

    def render(self, fields: DocumentFields, media_urls: Sequence[str] = ()) -> str:
        """
        Pure function of its inputs: identical fields and media produce
        byte-identical output. The only date in the document is ``fields.date``.
        """
        html = self.template.render(
            doc=fields,
            media=self.media_items(media_urls),
        )
        logger.debug("Rendered clinical document", size_chars=len(html), media_count=len(media_urls))
        return html
