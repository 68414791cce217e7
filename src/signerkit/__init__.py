"""signerkit - provider-agnostic transaction signing."""

__version__ = "0.1.0"
