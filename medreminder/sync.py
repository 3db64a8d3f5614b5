# medreminder/sync.py
from .errors import IdempotentConflict, RemoteRejected
from .logs import logger
from .offline_queue import ActionKind, QueuedAction


class SyncReconciler:
    """Queue processor: applies one queued action to the remote store.

    Upserts and deletes are idempotent by construction. A dose-taken replay is
    not, so it relies on the remote rejecting a repeat; that rejection (and
    any other idempotent conflict) is treated as the action having succeeded.
    """

    def __init__(self, remote):
        self.remote = remote

    def process(self, action: QueuedAction):
        try:
            if action.kind == ActionKind.UPSERT_MEDICATION:
                self.remote.upsert_medication(action.payload)
            elif action.kind == ActionKind.MARK_DOSE_TAKEN:
                self.remote.mark_dose_taken(action.payload)
            elif action.kind == ActionKind.DELETE_MEDICATION:
                self.remote.delete_medication(action.payload["id"])
            else:
                raise RemoteRejected(f"unsupported action kind: {action.kind}")
        except IdempotentConflict as e:
            logger.info(f"{action.kind.value} {action.action_id} already applied remotely ({e})")

    __call__ = process
