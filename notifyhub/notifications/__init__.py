"""
notification-service: validates, persists and announces notifications.
"""
