"""Provider connectors: HTTP retry helpers, OAuth token management, API clients."""
