"""Core photo-enhancement pipeline.

Architecture Overview
---------------------
The core is layered leaves first:

1. **Validation** (validation.py):
   - SSRF-safe acceptance of source URLs, prompt and label checks

2. **Accounting** (ledger.py, job_store.py):
   - Free-trial / paid-credit split, computed as a pure function
   - SQLite store with one atomic job-completion-plus-debit transaction

3. **Generation** (gemini_client.py, orchestrator.py):
   - Two-phase Files API upload and generateContent calls
   - Ordered model / input-mode strategies with bounded retry

4. **Packaging** (archive.py, storage.py):
   - Store-only ZIP built from scratch, written to object storage

5. **Coordination** (coordinator.py):
   - Job state machine tying the layers together

See Also
--------
- PhotoforgeConfig: Configuration options and environment variables
- photoforge.api.main: HTTP surface over the coordinator
"""

from photoforge.core.archive import build_archive
from photoforge.core.config import PhotoforgeConfig, config
from photoforge.core.coordinator import JobCoordinator, JobSummary, ProcessRequest
from photoforge.core.ledger import CreditLedger, CreditPreview, preview_credits
from photoforge.core.orchestrator import GeneratedOutput, GenerationOrchestrator

__all__ = [
    "CreditLedger",
    "CreditPreview",
    "GeneratedOutput",
    "GenerationOrchestrator",
    "JobCoordinator",
    "JobSummary",
    "PhotoforgeConfig",
    "ProcessRequest",
    "build_archive",
    "config",
    "preview_credits",
]
