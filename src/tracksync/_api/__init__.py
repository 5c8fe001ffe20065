"""Internal request builders and response parsers for the source and backend HTTP APIs."""
