"""Workflow scheduling and recovery engine.

This package drives autonomous units of work from issue assignment to merge
or abandonment, and recovers from the failures met along the way.

Key Components:
    - WorkflowMachine: Pure state machine over frozen state/event dataclasses
    - Coordinator: Async loop that performs I/O for one workflow instance
    - ErrorRecoveryEngine: Classifies failures and executes recovery strategies
    - CommandFixExecutor: Shell-command automated fixes and conflict resolution
    - AssignmentLedger: Process-wide, lock-guarded issue claims
    - HostWorkObserver: Work observation through issue labels and branch diffs
    - CheckpointManager: JSON checkpoints for resuming after a restart

Example:
    >>> from repo_autopilot.engine.coordinator import Coordinator
    >>> coordinator = Coordinator("agent-1", settings, host, observer, ErrorRecoveryEngine())
    >>> final_state = await coordinator.run()
"""
