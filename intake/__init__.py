"""
Exam Intake Pipeline
====================
Reconciles scanned and digital exam submissions into per-candidate page
records.

Architecture:
    - Rasterizer: Turns input files (PDF, DOCX, photos) into raw pages
    - Content Hasher: Fuzzy fingerprint used for dedup and caching
    - Result Cache: content hash -> validated analysis results
    - Analysis Dispatcher: Calls the inference service, validates responses
    - Layout Normalizer: Rotates and splits spread scans
    - Candidate Reconciler: Files derived pages under candidates
    - Batch Scheduler: Drains the pending pool one page at a time

Version: 1.0.0
"""

__version__ = "1.0.0"
