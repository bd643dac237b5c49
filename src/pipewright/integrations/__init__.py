"""Outbound collaborators: AI service, build service and notification relay."""
