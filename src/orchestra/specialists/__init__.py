from orchestra.specialists.advisor import AdvisorAgent
from orchestra.specialists.architect import ArchitectAgent
from orchestra.specialists.base import SpecialistAgent, SpecialistResponse, extract_json_object
from orchestra.specialists.coder import CoderAgent
from orchestra.specialists.designer import DesignerAgent
from orchestra.specialists.goal_validator import WorkspaceGoalValidator
from orchestra.specialists.packager import PackagerAgent
from orchestra.specialists.planner import PlannerAgent
from orchestra.specialists.reviewer import ReviewerAgent
from orchestra.specialists.tester import TesterAgent

__all__ = [
    "AdvisorAgent",
    "ArchitectAgent",
    "CoderAgent",
    "DesignerAgent",
    "PackagerAgent",
    "PlannerAgent",
    "ReviewerAgent",
    "SpecialistAgent",
    "SpecialistResponse",
    "TesterAgent",
    "WorkspaceGoalValidator",
    "extract_json_object",
]
