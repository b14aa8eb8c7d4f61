"""Runtime settings and layout file loading."""
