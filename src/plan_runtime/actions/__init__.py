from .launcher import Action, ActionLauncher, ActionStatus

__all__ = ["Action", "ActionLauncher", "ActionStatus"]
