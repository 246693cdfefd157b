"""
Core download engine.

`DownloadSession` owns the lock, the ledger and the backups for one
invocation and hands each manga to the `DownloadOrchestrator`, which selects
chapters, runs their pipelines through the shared page pool and hands the
results to the `ChapterAssembler`.
"""
