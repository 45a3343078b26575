"""
Service Commander
═══════════════════════════════════════════════════
Self-service deployment of predefined container services on one Docker
host: deploy, lifecycle, health monitoring and volume backups.
"""

__version__ = "1.0.0"
