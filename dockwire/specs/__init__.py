"""Bundled engine API documents, one swagger file per API version."""
