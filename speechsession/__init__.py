"""Realtime speech transcription session manager for the OCI speech service."""
