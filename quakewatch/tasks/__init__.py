from quakewatch.tasks.base import BaseTask
from quakewatch.tasks.command import CommandTask
from quakewatch.tasks.feed import FeedPollTask
from quakewatch.tasks.function import FunctionTask

__all__ = ["BaseTask", "CommandTask", "FeedPollTask", "FunctionTask"]
