"""Job orchestration for external CLI model providers.

Each request is a single process invocation (codex, gemini) that receives an
assembled prompt on stdin and streams JSONL events on stdout. The package is
concerned with what happens around that process: validating paths, walking a
fallback chain of models, recording job state that survives the caller, and
cancelling only the processes this instance started.
"""
