"""
    Errors raised by the container codec.
"""

class ContainerError(Exception):
    """Base class for container codec errors."""

class MalformedContainer(ContainerError):
    """The bytes do not follow the container layout."""

class InvalidKey(ContainerError):
    """Decryption failed.

    Raised both for a wrong passphrase and for corrupt ciphertext, the two
    cases are not told apart.
    """
    def __init__(self, detail: str = "Invalid decryption key"):
        super().__init__(detail)
