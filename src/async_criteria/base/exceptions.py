class ObjectNotFoundException(Exception):
    """Exception raised when no entity matches the requested criteria."""

    def __init__(self, message: str = "The requested object was not found."):
        super().__init__(message)


class MultipleObjectsFoundException(Exception):
    """Exception raised when exactly one entity was expected but several matched."""

    def __init__(self, message: str = "More than one object matched the criteria."):
        super().__init__(message)


class UnknownRelationError(Exception):
    """Raised by an engine when a join path names a relation the mapping lacks."""

    def __init__(self, message: str = "Unknown relation in join path."):
        super().__init__(message)


class InvalidOperatorValueError(ValueError):
    """Raised when an operator receives a value of the wrong shape."""

    def __init__(self, message: str = "Invalid value for operator."):
        super().__init__(message)
