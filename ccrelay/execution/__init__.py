from ccrelay.execution.runner import CLIRunner, RunnerState

__all__ = ["CLIRunner", "RunnerState"]
