"""lotbook services package.

Each service is independently testable and talks to its collaborators
through Protocol interfaces injected at construction.
"""
