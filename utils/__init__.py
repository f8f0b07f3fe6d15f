"""Library App - helper modules

- validators: ISBN / e-mail / search-pattern helpers
- ui_helpers: CLI output modes (plain, json, rich)
"""
