class BridgeError(Exception):
    pass


class ConfigurationError(BridgeError):
    """The cog is missing a setting it needs for this event."""


class MissingIdentityError(BridgeError):
    """No installation or token could be resolved to talk to GitHub."""
