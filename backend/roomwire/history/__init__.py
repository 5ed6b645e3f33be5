"""Durable message log and history endpoints."""
