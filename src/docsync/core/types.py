"""Shared types for docsync.

This module defines enums used by the configuration model and the sync engine.
"""

from __future__ import annotations

from enum import Enum


class Mode(str, Enum):
    """Processing mode of a connector.

    The value is sent verbatim in the ``cdr-processing-mode`` header.
    ``NONE`` only exists so a misconfiguration can be parsed and reported.
    """

    TEST = "test"
    PRODUCTION = "production"
    NONE = "none"

    @classmethod
    def _missing_(cls, value: object) -> Mode | None:
        if isinstance(value, str):
            for member in cls:
                if member.value == value.lower():
                    return member
        return None


class DocumentType(str, Enum):
    """Forum Datenaustausch document types, identified by XML root namespace."""

    CONTAINER = "container"
    CREDIT = "credit"
    FORM = "form"
    HOSPITAL_MCD = "hospital_mcd"
    INVOICE = "invoice"
    NOTIFICATION = "notification"
    UNDEFINED = "undefined"

    @classmethod
    def _missing_(cls, value: object) -> DocumentType | None:
        if isinstance(value, str):
            for member in cls:
                if member.value == value.lower():
                    return member
        return None

    @property
    def namespace(self) -> str | None:
        """Get the XML namespace URI of this document type."""
        return DOCUMENT_NAMESPACES.get(self)

    @classmethod
    def from_namespace(cls, namespace: str | None) -> DocumentType:
        """Map an XML namespace URI to a document type.

        Args:
            namespace: Namespace URI of the document's root element.

        Returns:
            The matching type, or ``UNDEFINED`` if the namespace is unknown.
        """
        if namespace:
            for doc_type, uri in DOCUMENT_NAMESPACES.items():
                if uri == namespace:
                    return doc_type
        return cls.UNDEFINED


DOCUMENT_NAMESPACES: dict[DocumentType, str] = {
    DocumentType.CONTAINER: "http://www.forum-datenaustausch.ch/container",
    DocumentType.CREDIT: "http://sumex1.net/gcr",
    DocumentType.FORM: "http://www.forum-datenaustausch.ch/form",
    DocumentType.HOSPITAL_MCD: "http://www.forum-datenaustausch.ch/mcd",
    DocumentType.INVOICE: "http://www.forum-datenaustausch.ch/invoice",
    DocumentType.NOTIFICATION: "http://www.forum-datenaustausch.ch/notification",
}


class FileBusyTestStrategy(str, Enum):
    """How to decide whether a source file is still being written."""

    NEVER_BUSY = "never_busy"
    FILE_SIZE_CHANGED = "file_size_changed"
    ALWAYS_BUSY = "always_busy"

    @classmethod
    def _missing_(cls, value: object) -> FileBusyTestStrategy | None:
        if isinstance(value, str):
            normalized = value.lower().replace("-", "_")
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class UploadTriggerType(str, Enum):
    """Source of candidate upload paths."""

    EVENT = "event"
    POLLING = "polling"

    @classmethod
    def _missing_(cls, value: object) -> UploadTriggerType | None:
        if isinstance(value, str):
            for member in cls:
                if member.value == value.lower():
                    return member
        return None


class SyncStatus(str, Enum):
    """Synchronization status reported by the agent."""

    SYNCHRONIZING = "synchronizing"
    DISABLED = "disabled"
    ERROR = "error"
    STOPPED = "stopped"
