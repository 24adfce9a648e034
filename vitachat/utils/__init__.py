# Utils: prompt_manager, background tasks, id helpers
from vitachat.utils.ids import new_message_id
from vitachat.utils.prompt_manager import PromptManager
from vitachat.utils.task_runner import BackgroundTasks, background_tasks

__all__ = ["BackgroundTasks", "PromptManager", "background_tasks", "new_message_id"]
