"""Shipment notification service."""
