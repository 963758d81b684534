"""Shared helpers for log hygiene and privacy."""
