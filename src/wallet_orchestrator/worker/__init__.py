"""
Worker process subsystem.

Components:
- protocol.py: JSON-lines message union (pydantic)
- process.py: parent-side handle for one worker process
- runner.py: child entrypoint (`python -m wallet_orchestrator.worker.runner`)
- script_context.py: the `ctx` object handed to scripts
- script_loader.py: script resolution and the static script catalog
"""
