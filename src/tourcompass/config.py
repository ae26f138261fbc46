import json
import logging
import os

DEFAULTS = {
    'window_months': 18,
    'chunk_size': 10,
    'chunk_pause_seconds': 0.5,
    'timezone': 'Asia/Tokyo',
    'log_retention_days': 90,
    'preview_limit': 5,
    'db_path': os.path.join(os.path.expanduser('~'), '.tourcompass', 'tourcompass.db'),
}


def _config_path():
    base = os.path.join(os.path.expanduser('~'), '.tourcompass')
    os.makedirs(base, exist_ok=True)
    return os.path.join(base, 'tourcompass_config.json')


def load_config(path: str = None) -> dict:
    """Defaults, overlaid with whatever the config file sets."""
    path = path or _config_path()
    cfg = dict(DEFAULTS)
    if not os.path.exists(path):
        return cfg
    try:
        with open(path, 'r', encoding='utf-8') as f:
            stored = json.load(f)
    except (OSError, ValueError) as e:
        logging.error(f"Config {path} unreadable, using defaults: {e}")
        return cfg
    if isinstance(stored, dict):
        cfg.update(stored)
    return cfg


def save_config(cfg: dict, path: str = None):
    path = path or _config_path()
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(cfg, f, ensure_ascii=False, indent=2)
