# config.py
import os
import streamlit as st

DEFAULTS = {
    "db_path": "data/ubuntu_eats.db",
    "functions_base_url": "https://us-central1-ubuntu-eats.cloudfunctions.net",
    "google_api_key": None,
    "volunteer_poll_seconds": 60,
    "optimistic_match_seconds": 5,
    "failed_message_ttl_seconds": 5,
    "chat_poll_seconds": 2,
    "http_timeout_seconds": 10,
}


def get_setting(key, default=None):
    """Look up a setting: Streamlit secrets first, then UBUNTU_EATS_<KEY>, then defaults."""
    try:
        return st.secrets[key]
    except Exception:
        pass
    env_value = os.getenv("UBUNTU_EATS_" + key.upper())
    if env_value is not None:
        return env_value
    if default is not None:
        return default
    return DEFAULTS.get(key)


def get_float(key, default=None):
    value = get_setting(key, default)
    if value is None or value == "":
        return None
    return float(value)
