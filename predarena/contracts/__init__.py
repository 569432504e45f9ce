"""Event contracts (stream names + strict payload validation) for workflow triggers."""
