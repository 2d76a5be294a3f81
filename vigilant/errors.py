"""Exceptions raised by the vigilante components."""


class VigilanteError(Exception):
    """Base class for all errors raised by this package."""

    default_message = "vigilante error"

    def __init__(self, *args: object) -> None:
        super().__init__(*(args or (self.default_message,)))


class EmptyCacheError(VigilanteError, LookupError):
    default_message = "empty cache"


class InvalidMaxEntriesError(VigilanteError, ValueError):
    default_message = "invalid max entries"


class TooManyEntriesError(VigilanteError, ValueError):
    default_message = "the number of blocks is more than maxEntries"


class UnsortedBlocksError(VigilanteError, ValueError):
    default_message = "blocks are not sorted by height"


class InvalidMultiSigError(VigilanteError):
    default_message = "invalid multi-sig"


class InsufficientPowerError(VigilanteError):
    default_message = "insufficient power"


class InvalidEpochNumError(VigilanteError):
    default_message = "invalid epoch number"


class InconsistentBlockHashError(VigilanteError):
    default_message = "inconsistent BlockHash"


class LivenessAttackError(VigilanteError):
    default_message = "liveness attack"