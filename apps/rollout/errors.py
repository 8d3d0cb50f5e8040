from __future__ import annotations


class RolloutError(Exception):
    code = 'rollout_error'
    retryable = False

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def as_dict(self) -> dict:
        return {'code': self.code, 'detail': self.detail, 'retryable': self.retryable}


class InvalidSeed(RolloutError):
    code = 'invalid_seed'


class SchemaMismatch(RolloutError):
    code = 'schema_mismatch'


class InvalidPlan(RolloutError):
    code = 'invalid_plan'


class DeploymentRejected(RolloutError):
    code = 'deployment_rejected'


class ConfirmationTimeout(RolloutError):
    code = 'confirmation_timeout'
    # The binder re-detects confirmed code on the next run.
    retryable = True


class ResourceNotFound(RolloutError):
    code = 'resource_not_found'


class StorageCorrupt(RolloutError):
    code = 'storage_corrupt'


class AddressConflict(RolloutError):
    code = 'address_conflict'


class ArtifactMissing(RolloutError):
    code = 'artifact_missing'


class UnknownNetwork(RolloutError):
    code = 'unknown_network'


class NetworkMismatch(RolloutError):
    code = 'network_mismatch'


class RpcUnreachable(RolloutError):
    code = 'rpc_unreachable'
