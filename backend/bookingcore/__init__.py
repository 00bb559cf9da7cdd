"""Booking negotiation core: lifecycle, group coordination, replicas and notifications."""
