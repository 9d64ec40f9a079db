"""
Constants
Centralised storage for system-wide constants, state paths, and sentinels.
"""
COMPLETION_SIGIL = "<promise>COMPLETE</promise>"

STATE_FOLDER = ".battleloop"
BATTLES_FOLDER = "battles"
LOGS_FOLDER = "logs"

CONFIG_FILE = "config.yaml"
PRD_FILE = "prd.json"
PROGRESS_FILE = "progress.json"
HISTORY_FILE = "history.json"
CHECKPOINTS_FILE = "checkpoints.json"

# Repo-relative prefixes never staged by auto-commit nor captured in patches
INTERNAL_STATE_PREFIXES = (f"{STATE_FOLDER}/",)

DEFAULT_CANCEL_REASON = "Cancelled by user"
APPROVAL_SUMMARY_LIMIT = 500
