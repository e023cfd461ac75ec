"""Speechmatics transcription relay.

Importing the package reads ``server/.env`` so the API key and relay
settings are in the environment before ``app.config`` builds ``Settings``.
"""
from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv

_SERVER_DIR = Path(__file__).resolve().parent.parent

# Real environment variables win over .env; .env.local wins over .env.
load_dotenv(_SERVER_DIR / ".env")
load_dotenv(_SERVER_DIR / ".env.local", override=True)
