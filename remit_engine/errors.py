"""
Error Taxonomy

Only programmer/data errors and collaborator failures are raised. Business
outcomes such as a cap denial or a bonus not being earned are returned as
structured results, never raised.
"""


class RemitEngineError(Exception):
    """Base class for all engine errors"""
    pass


class NotFoundError(RemitEngineError):
    """Unknown customer, beneficiary, transfer or flag"""

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} not found")


class InvalidAmountError(RemitEngineError):
    """Non-positive, malformed or wrong-currency amount"""
    pass


class InvalidTransitionError(RemitEngineError):
    """Illegal state machine move"""

    def __init__(self, entity: str, current_state: str, action: str):
        self.entity = entity
        self.current_state = current_state
        self.action = action
        super().__init__(f"Cannot {action} {entity} in state '{current_state}'")


class IneligibleTransferError(RemitEngineError):
    """Bonus requested for a transfer that cannot earn one"""

    def __init__(self, transfer_id: str, reason: str):
        self.transfer_id = transfer_id
        self.reason = reason
        super().__init__(f"Transfer {transfer_id} cannot earn a bonus: {reason}")


class StorageError(RemitEngineError):
    """Storage collaborator failure"""
    pass


class DuplicateKeyError(StorageError):
    """Unique constraint violated on insert"""

    def __init__(self, table: str, key: str):
        self.table = table
        self.key = key
        super().__init__(f"Duplicate key '{key}' in {table}")
