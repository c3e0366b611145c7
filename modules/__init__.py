"""
Application Modules.

- backend/: Event system, persistence, configuration and logging
"""
