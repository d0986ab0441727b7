"""Exceptions raised by the team coordination core."""


class TeamBridgeError(Exception):
	"""Base class for team-bridge errors."""
	pass


class InvalidNameError(TeamBridgeError, ValueError):
	"""Raised when a team or worker name has no usable characters left."""
	pass


class InvalidTaskIdError(TeamBridgeError, ValueError):
	"""Raised when a task id contains characters unsafe for a filename."""
	pass


class PathTraversalError(TeamBridgeError, ValueError):
	"""Raised when a computed path escapes its expected base directory."""
	pass


class TaskNotFoundError(TeamBridgeError):
	"""Raised when a task file to update is missing or malformed."""

	def __init__(self, task_id: str):
		self.task_id = task_id
		super().__init__(f"Task file not found or malformed: {task_id}")


class TaskExistsError(TeamBridgeError):
	"""Raised when creating a task whose id is already taken."""

	def __init__(self, task_id: str):
		self.task_id = task_id
		super().__init__(f"Task already exists: {task_id}")


class SessionError(TeamBridgeError):
	"""Raised when the session manager fails to start a worker session."""
	pass
