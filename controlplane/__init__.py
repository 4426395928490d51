"""Scope-hierarchical authorization and a tenant-enforcing observability proxy.

Scopes form a fixed three-level tree (organization -> project -> resource). Grants
made at an ancestor scope apply to every descendant.
"""
