# Import all models so alembic autogenerate can discover them
from app.models.base import Base
from app.models.project import Project
from app.models.work import Work
from app.models.project_work import ProjectWork
from app.models.screening_decision import ScreeningDecisionRecord
from app.models.conflict import Conflict
from app.models.conflict_resolution import ConflictResolution
from app.models.activity import Activity

__all__ = [
    "Base", "Project", "Work", "ProjectWork", "ScreeningDecisionRecord",
    "Conflict", "ConflictResolution", "Activity",
]
