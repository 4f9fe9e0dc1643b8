# errors.py


class PeerSessionError(Exception):
    """Base class for every failure surfaced by a game session."""


class BrokerUnavailable(PeerSessionError):
    """The rendezvous service could not be reached. Manual exchange still works."""


class PeerUnreachable(PeerSessionError):
    """The remote endpoint id is unknown, stale or already gone."""


class InvalidDescriptor(PeerSessionError):
    """A pasted or relayed description/candidate payload could not be used."""


class NegotiationTimeout(PeerSessionError):
    """No transport opened before the negotiation deadline."""


class MediaPermissionDenied(PeerSessionError):
    """The microphone could not be opened. The game continues without voice."""


class TransportClosed(PeerSessionError):
    """The opponent left or the data channel dropped."""


class InvalidMessage(PeerSessionError):
    """An in-game message could not be decoded."""
