"""HTTP clients for external services.

Modules:
    coordinator: Task acquisition and artifact upload against the coordinator.
"""
