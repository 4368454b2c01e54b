from .stage import Stage
from .task import Task
from .run import TaskRun
from .subtask import SubtaskProgress
from .process_metric import ProcessMetric
from .reporter_status import ReporterStatus
from .retention import MetricsRetention

__all__ = [
    "Stage",
    "Task",
    "TaskRun",
    "SubtaskProgress",
    "ProcessMetric",
    "ReporterStatus",
    "MetricsRetention",
]
