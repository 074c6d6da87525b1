import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from lifting_app import LiftingApp
from live_query import LiveQuery


def test_app_wires_services(tmp_path):
    settings = str(tmp_path / "settings.yaml")
    app = LiftingApp(str(tmp_path / "app.db"), settings)
    assert app.settings.frequency_weight == 0.2
    assert app.seed() > 0
    assert app.search.search("squat")[0]["name"].startswith("Squat")
    wid = app.workouts.start_or_resume_pending()
    assert app.workouts.fetch_pending_id() == wid
    assert isinstance(app.observe_templates(), LiveQuery)


def test_db_path_from_settings(tmp_path, monkeypatch):
    monkeypatch.delenv("LIFTING_DB", raising=False)
    settings = tmp_path / "settings.yaml"
    db_file = tmp_path / "from_settings.db"
    settings.write_text(f"db_path: {db_file}\nfrequency_weight: 0.5\n", encoding="utf-8")
    app = LiftingApp(settings_path=str(settings))
    assert app.db_path == str(db_file)
    assert app.search.frequency_weight == 0.5
    assert db_file.exists()
