"""
Exceptions raised for caller misuse.

Store failures are never raised out of the tracking API; they are logged and
swallowed so that tracking can not abort the pipeline being tracked.
"""


class TaskTrackError(Exception):
    """Base class for tasktrack errors"""


class InvalidArgumentError(TaskTrackError, ValueError):
    """An argument is outside its documented domain"""


class TaskNotRegisteredError(TaskTrackError, ValueError):
    """The (stage, task) pair has not been registered"""

    def __init__(self, stage: str, task: str):
        super().__init__(f"task '{task}' in stage '{stage}' is not registered")
        self.stage = stage
        self.task = task
