"""
Proxy cache error types.

Public operations report ineligible input and failed completions as
booleans; these exceptions cover the conditions that abort an operation.
"""


class ProxyError(Exception):
    """Base exception for all proxy cache failures."""
    pass


class DocumentRewriteError(ProxyError):
    """Raised when a project document cannot be rewritten structurally."""

    def __init__(self, reason: str, line: int = 0):
        self.reason = reason
        self.line = line
        where = f" (line {line})" if line else ""
        super().__init__(f"Cannot rewrite document{where}: {reason}")


class ToolNotFoundError(ProxyError):
    """Raised when an external transcoding tool cannot be located."""

    def __init__(self, name: str, env_key: str):
        self.name = name
        self.env_key = env_key
        super().__init__(f"Tool not found: {name}. Install it or set {env_key}.")
