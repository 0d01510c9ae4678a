from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class JobState(str, enum.Enum):
    """Lifecycle states of one job inside the sequencer"""
    IDLE = "idle"
    CONSUMER_STARTING = "consumer_starting"
    PRODUCER_RUNNING = "producer_running"
    DRAIN_WAITING = "drain_waiting"
    CONSUMER_STOPPING = "consumer_stopping"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


class WorkerState(str, enum.Enum):
    """Background worker status"""
    PENDING = "pending"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class RunMode(str, enum.Enum):
    """Sequencer run mode"""
    ONCE = "once"
    CYCLE = "cycle"
