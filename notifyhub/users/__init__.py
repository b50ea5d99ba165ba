"""
user-service: user registry that issues welcome and explicit notifications.
"""
