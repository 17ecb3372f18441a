"""
App package for the lorewright world-info server.

Engine code lives under ``app/core``: ``World_Info`` holds the activation
pipeline, ``DB_Management`` the SQLite store, and ``config``, ``Logging``,
``Metrics`` and ``Utils`` the shared plumbing.
"""
