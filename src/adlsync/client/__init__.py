"""Client module - schedule policy, API client, token handling, store and uploads."""
