"""
PDF Merge Backend - REST API for merging remote documents into PDFs

This package provides a FastAPI-based web service that downloads remote
documents and merges them into combined PDF files. It enables:

- Synchronous merging of a list of sources in a single request
- Batch jobs with many named output groups, processed in the background
- Status polling and per-group downloads while outputs are retained
- Webhook notification when a batch job finishes
- Time-based reclamation of expired output files

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - engine: Construction and lifecycle of the batch engine components
    - job_manager: Submission, status, download and synchronous merge
    - orchestrator: Job state machine and status aggregation
    - group_processor: Bounded concurrent fetch and ordered merge of one group
    - fetcher: Source download with retry and failure classification
    - pdf_merger: PDF accumulator with image-to-page conversion
    - worker: Single-slot polling worker
    - reaper: Expiry, orphan and stale-job sweeps
    - notifier: Webhook delivery
    - database: SQLite job store
    - key_manager: App tokens for API authentication
    - cli: Local merge of PDF files from the command line

Usage:
    Run the API server with:
        uvicorn pdf_merge_backend.main:app --host 0.0.0.0 --port 8000

    Merge local files with:
        pdf-merge <file-or-directory> [output.pdf]

Architecture Principles:
    - One active job per process; the store is the single source of truth
    - Source failures stay inside their group, group failures inside their job
    - Output page order always follows source submission order
    - Webhook and telemetry delivery never block a state transition
"""
