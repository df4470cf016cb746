"""
Migration execution engine.

Subpackages:
    decoders: Streaming decoders for tabular, XML and SQL dump sources
    analysis: Schema inference from a bounded record sample
    loaders: Destination writers that capture rollback images

Modules:
    memory: Memory governor and adaptive batch sizing
    retry: Error classification and retry control
    checkpoints: File and SQL checkpoint stores
    rollback: Operation log and rollback replay
    progress: Progress aggregation and throttled reporting
    runner: Sequential and parallel batch executors

Example:
    decoder = open_decoder("exports/users.csv")
    descriptor = SchemaAnalyzer().analyze(decoder, "exports/users.csv")

    runner = MigrationRunner(decoder, loader, run_id="users-2024")
    result = await runner.run("exports/users.csv", resume_from=True)
"""
