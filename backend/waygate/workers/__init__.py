"""Scheduled jobs for the token refresh coordinator."""
