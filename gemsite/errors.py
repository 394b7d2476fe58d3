class GemsiteError(Exception):
    pass


class IdentityError(GemsiteError):
    """Server key/certificate material is missing, unreadable or malformed."""


class ProtocolError(GemsiteError):
    """Connection-fatal protocol failure. Never retried."""


class HandshakeError(ProtocolError):
    pass


class RequestError(ProtocolError):
    """The request line could not be turned into a gemini URL."""


class LineTooLong(RequestError):
    pass


class MalformedRequest(RequestError):
    pass
