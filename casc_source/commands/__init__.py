"""CLI command implementations for casc_source.

- builds: List remote builds for a region
- fetch: Fetch a file by FileDataID or name from the CDN or a local install
- install: List the install manifest of a remote build
"""
