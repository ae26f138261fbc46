import json

from tourcompass.config import DEFAULTS, load_config, save_config


def test_missing_file_gives_defaults(tmp_path):
    cfg = load_config(str(tmp_path / "none.json"))
    assert cfg == DEFAULTS
    assert cfg['window_months'] == 18 and cfg['timezone'] == 'Asia/Tokyo'


def test_partial_file_is_merged_over_defaults(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({'chunk_size': 3}), encoding='utf-8')
    cfg = load_config(str(path))
    assert cfg['chunk_size'] == 3
    assert cfg['chunk_pause_seconds'] == 0.5


def test_unreadable_file_falls_back(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text("{not json", encoding='utf-8')
    assert load_config(str(path)) == DEFAULTS


def test_save_then_load(tmp_path):
    path = str(tmp_path / "cfg.json")
    save_config({'preview_limit': 2, 'log_retention_days': 30}, path)
    cfg = load_config(path)
    assert cfg['preview_limit'] == 2
    assert cfg['log_retention_days'] == 30
    assert cfg['window_months'] == 18
