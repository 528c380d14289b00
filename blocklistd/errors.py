"""Exception hierarchy for blocklistd."""


class BlocklistdError(Exception):
    """Base exception for blocklist daemon errors."""
    pass


class ConfigError(BlocklistdError):
    """Exception raised when the configuration file or a value is invalid."""
    pass


class CacheError(BlocklistdError):
    """Exception raised when the feed cache cannot be created or written."""
    pass


class FetchError(BlocklistdError):
    """Exception raised when downloading the feed fails."""
    pass


class ParseError(BlocklistdError):
    """Exception raised when feed content cannot be interpreted."""
    pass


class RuleApplyError(BlocklistdError):
    """Exception raised when the filter chain could not be rebuilt."""
    pass


class TeardownError(BlocklistdError):
    """Exception raised when the filter chain could not be removed."""
    pass


class ChannelError(BlocklistdError):
    """Exception raised when the control socket is unavailable."""
    pass
