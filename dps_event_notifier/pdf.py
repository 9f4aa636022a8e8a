"""PDF export channel.

Asks the document renderer for a PDF of the event and mails it as an
attachment. The renderer is any callable taking a list of event dicts
(``Event.to_dict()``) and returning the document as bytes; which library
draws the document is up to the deployment (``PDF_RENDERER``).
"""

from __future__ import annotations

import importlib
import logging
from typing import Callable, List

from .channels import Outcome, Permanent, Retryable
from .emailer import EmailChannel
from .normalizer import Event

logger = logging.getLogger(__name__)

Renderer = Callable[[List[dict]], bytes]


def load_renderer(spec: str) -> Renderer:
    """Import ``"package.module:callable"``."""
    module_name, sep, attr = (spec or "").partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"PDF_RENDERER must look like 'package.module:callable', got {spec!r}")
    module = importlib.import_module(module_name)
    renderer = getattr(module, attr)
    if not callable(renderer):
        raise ValueError(f"{spec} is not callable")
    return renderer


class PdfChannel:
    name = "pdf"

    def __init__(self, renderer: Renderer, mailer: EmailChannel, filename: str = "dps-events.pdf"):
        self.renderer = renderer
        self.mailer = mailer
        self.filename = filename

    def render(self, event: Event) -> bytes:
        return self.renderer([event.to_dict()])

    def send(self, event: Event) -> Outcome:
        try:
            document = self.render(event)
        except (TimeoutError, OSError) as e:
            logger.warning("PDF render for %s failed transiently: %s", event.id, e)
            return Retryable(f"renderer unavailable: {e}")
        except Exception as e:
            logger.exception("PDF render for %s failed", event.id)
            return Permanent(f"renderer error: {type(e).__name__}: {e}")
        if not isinstance(document, (bytes, bytearray)) or not document:
            return Permanent("renderer returned no document")

        subject = f"{self.mailer.subject_prefix} Event export: {event.title}"
        msg = self.mailer.compose(event, subject=subject)
        msg.add_attachment(bytes(document), maintype="application", subtype="pdf", filename=self.filename)
        return self.mailer.deliver(msg)


__all__ = ["PdfChannel", "load_renderer", "Renderer"]
