"""Document type detection from the XML root element namespace."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import TYPE_CHECKING

from docsync.core.types import DocumentType

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


def root_namespace(file: Path) -> str | None:
    """Read the namespace URI of a document's root element.

    Only the start of the document is parsed.

    Args:
        file: XML document.

    Returns:
        Namespace URI, or None if the root element has no namespace.

    Raises:
        ET.ParseError: If the document is not well-formed up to its root element.
    """
    with file.open("rb") as fh:
        for _, element in ET.iterparse(fh, events=("start",)):
            tag = element.tag
            if tag.startswith("{"):
                return tag[1:].partition("}")[0]
            return None
    return None


def detect_document_type(file: Path) -> DocumentType:
    """Classify a downloaded document.

    Args:
        file: XML document.

    Returns:
        The document type, or UNDEFINED if the file cannot be parsed or its
        namespace is unknown.
    """
    try:
        namespace = root_namespace(file)
    except (ET.ParseError, OSError) as e:
        logger.warning("Could not determine document type of '%s': %s", file, e)
        return DocumentType.UNDEFINED
    return DocumentType.from_namespace(namespace)
