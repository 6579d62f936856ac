"""
Job orchestration: queue, worker pool, single-flight result cache and the
operation registry that dispatches to the processing engines.
"""
