import logging

from auth_service import AuthService
from config import YamlConfig
from csv_import_service import CSVImportService
from db import (
    Database,
    ExerciseRepository,
    SetRepository,
    TemplateExerciseRepository,
    TemplateRepository,
    UserRepository,
    WorkoutExerciseRepository,
    WorkoutRepository,
)
import live_query
from search_service import SearchService
from settings_schema import validate_settings

logger = logging.getLogger(__name__)


class LiftingApp:
    """Wire the store, services and settings for one database file.

    Construction migrates the database; a :class:`migrate.SchemaError` is
    left to abort startup.
    """

    def __init__(self, db_path: str | None = None, settings_path: str = "settings.yaml") -> None:
        self.config = YamlConfig(settings_path)
        self.settings = validate_settings(self.config.load())
        self.db_path = db_path or self.config.db_path()
        self.db = Database(self.db_path)
        self.exercises = ExerciseRepository(self.db_path)
        self.templates = TemplateRepository(self.db_path)
        self.template_exercises = TemplateExerciseRepository(self.db_path)
        self.workouts = WorkoutRepository(self.db_path)
        self.workout_exercises = WorkoutExerciseRepository(self.db_path)
        self.sets = SetRepository(self.db_path)
        self.users = UserRepository(self.db_path)
        self.importer = CSVImportService(self.db, self.config)
        self.search = SearchService(self.exercises, self.config)
        self.auth = AuthService(self.users, self.config)
        logger.info("lifting store ready at %s", self.db_path)

    def seed(self) -> int:
        return self.db.seed_exercises()

    def observe_templates(self) -> live_query.LiveQuery:
        return live_query.observe_templates(self.db_path)

    def observe_exercises(self) -> live_query.LiveQuery:
        return live_query.observe_exercises(self.db_path)

    def observe_history(self) -> live_query.LiveQuery:
        return live_query.observe_history(self.db_path)

    def observe_exercise_history(self, exercise_id: str) -> live_query.LiveQuery:
        return live_query.observe_exercise_history(self.db_path, exercise_id)
