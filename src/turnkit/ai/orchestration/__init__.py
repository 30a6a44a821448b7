"""Turn orchestration: classification, streaming, tools, images and attachments.

Import concrete pieces from their submodules (for example
``turnkit.ai.orchestration.orchestrator``); this package module stays light
because :mod:`turnkit.ai.client` depends on :mod:`.cancellation`.
"""

from .cancellation import CancellationToken

__all__ = ["CancellationToken"]
