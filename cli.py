import argparse
import logging
import os
import shutil
import sqlite3

import migrate
from config import YamlConfig
from lifting_app import LiftingApp
from settings_schema import validate_settings

logger = logging.getLogger(__name__)


def backup_db(db_path: str, backup_path: str) -> None:
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
    finally:
        conn.close()
    shutil.copy(db_path, backup_path)


def restore_db(backup_path: str, db_path: str) -> None:
    if not os.path.exists(backup_path):
        raise FileNotFoundError(backup_path)
    for suffix in ("-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.remove(db_path + suffix)
    shutil.copy(backup_path, db_path)
    logger.info("restored %s from %s", db_path, backup_path)


def run_import(app: LiftingApp, csv_path: str, force: bool) -> None:
    result = app.importer.import_file(csv_path, force=force)
    if result.skipped_because_already_imported:
        print("Workouts were already imported; use --force to import again")
        return
    print(
        f"Imported {result.workouts_inserted} workouts, "
        f"{result.workout_exercises_inserted} exercises, "
        f"{result.sets_inserted} sets "
        f"({result.exercises_inserted_or_ignored} distinct exercise names)"
    )


def run_search(app: LiftingApp, query: str, limit: int | None) -> None:
    for row in app.search.search(query, limit):
        print(f"{row['score']:>6}  {row['name']}  (used {row['frequency']}x)")


def run_history(app: LiftingApp, exercise: str) -> None:
    exercise_id = app.exercises.fetch_by_name(exercise)
    if exercise_id is None:
        print(f"No exercise named {exercise!r}")
        return
    for entry in app.sets.fetch_exercise_history(exercise_id):
        weight = "-" if entry["weight"] is None else entry["weight"]
        reps = "-" if entry["reps"] is None else entry["reps"]
        print(f"{entry['workout_name']}  set {entry['sort_order'] + 1}: {weight} x {reps}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Lifting store utilities")
    parser.add_argument("--db", default=None, help="database file (default from settings)")
    parser.add_argument("--settings", default="settings.yaml")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("migrate")
    sub.add_parser("seed")

    imp = sub.add_parser("import")
    imp.add_argument("--csv", required=True)
    imp.add_argument("--force", action="store_true")

    srch = sub.add_parser("search")
    srch.add_argument("--query", default="")
    srch.add_argument("--limit", type=int, default=None)

    hist = sub.add_parser("history")
    hist.add_argument("--exercise", required=True)

    start = sub.add_parser("start")
    start.add_argument("--template", default=None, help="template id")

    sub.add_parser("complete")

    bkp = sub.add_parser("backup")
    bkp.add_argument("--out", default="backup.db")

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", default="backup.db")

    args = parser.parse_args(argv)

    config = YamlConfig(args.settings)
    settings = validate_settings(config.load())
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    if args.cmd == "restore":
        restore_db(args.src, args.db or config.db_path())
        return

    app = LiftingApp(args.db, args.settings)

    if args.cmd == "migrate":
        applied = migrate.applied_migrations(app.db_path)
        print(f"Schema up to date: {', '.join(applied)}")
    elif args.cmd == "seed":
        print(f"Seeded {app.seed()} exercises")
    elif args.cmd == "import":
        run_import(app, args.csv, args.force)
    elif args.cmd == "search":
        run_search(app, args.query, args.limit)
    elif args.cmd == "history":
        run_history(app, args.exercise)
    elif args.cmd == "start":
        if args.template:
            wid = app.workouts.start_pending_from_template(args.template)
        else:
            wid = app.workouts.start_or_resume_pending()
        print(wid)
    elif args.cmd == "complete":
        wid = app.workouts.fetch_pending_id()
        if wid is None or not app.workouts.complete(wid):
            print("No pending workout")
        else:
            print(f"Completed {wid}")
    elif args.cmd == "backup":
        backup_db(app.db_path, args.out)


if __name__ == "__main__":
    main()
