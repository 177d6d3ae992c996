class CrmError(Exception):
    """Base error for the CRM engine."""


class NotConnectedError(CrmError):
    """The account has no live WhatsApp connection."""


class ContactNotFoundError(CrmError):
    """No contact with that id exists for the account."""


class ContactValidationError(CrmError):
    """User-edited contact metadata was rejected; nothing was written."""


class IngestionError(CrmError):
    """An inbound event is malformed and cannot be normalized."""


class MediaUnavailableError(CrmError):
    """The live session no longer has the media payload."""


class ObjectStoreError(CrmError):
    """Upload to the object store failed."""


class TransportLoadError(CrmError):
    """TRANSPORT_FACTORY does not point at a usable factory."""
