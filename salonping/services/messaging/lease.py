"""Redis-backed ownership lease so one process holds a tenant's channel client."""

import redis

from salonping.common.logging import logger

# Owner check and expire/delete run as one server-side step.
RENEW_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""

RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class TenantLease:
    """`SET NX PX` lease per tenant, owned by `worker_id`."""

    def __init__(self, client: redis.Redis, worker_id: str, ttl_seconds: int = 60) -> None:
        self.client = client
        self.worker_id = worker_id
        self.ttl_ms = int(ttl_seconds * 1000)
        self._renew = client.register_script(RENEW_SCRIPT)
        self._release = client.register_script(RELEASE_SCRIPT)

    @staticmethod
    def key(tenant_id: str) -> str:
        return f"whatsapp:lease:{tenant_id}"

    def owner(self, tenant_id: str) -> str | None:
        value = self.client.get(self.key(tenant_id))
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    def held_elsewhere(self, tenant_id: str) -> bool:
        owner = self.owner(tenant_id)
        return owner is not None and owner != self.worker_id

    def acquire(self, tenant_id: str) -> bool:
        """Take the lease, or keep it when this worker already owns it."""

        if self.client.set(self.key(tenant_id), self.worker_id, nx=True, px=self.ttl_ms):
            return True
        return self.renew(tenant_id)

    def renew(self, tenant_id: str) -> bool:
        return bool(self._renew(keys=[self.key(tenant_id)], args=[self.worker_id, self.ttl_ms]))

    def release(self, tenant_id: str) -> None:
        try:
            self._release(keys=[self.key(tenant_id)], args=[self.worker_id])
        except redis.RedisError as exc:
            # The lease expires on its own after the TTL.
            logger.warning("lease_release_failed tenant_id=%s error=%s", tenant_id, exc)
