"""Exception types raised by the parser library."""


class ParserError(Exception):
    """Base class for parser library errors."""


class RoutineError(ParserError):
    """Raised for routine registry misuse or unknown routine names."""
