import logging

from file_upgrader.clients.interfaces import CredentialProvider
from file_upgrader.core.task_state_machine import TaskStateMachine
from file_upgrader.models import BulkJob, Credentials


async def refresh_batch_credentials(
    job: BulkJob, provider: CredentialProvider, state_machine: TaskStateMachine
) -> Credentials:
    """
    Returns usable credentials for a batch and stores rotated tokens back on it.

    APS refresh tokens work once, so refreshes of one batch are serialized: the
    first caller exchanges the token, everyone waiting behind it sees the new,
    still valid credentials and the provider hands them back unchanged.
    """
    async with job.credentials_lock:
        current = job.credentials
        refreshed = await provider.refresh(current)
        if refreshed != current:
            logging.debug(f"Batch {job.batch_id} credentials rotated")
            await state_machine.update_credentials(batch_id=job.batch_id, credentials=refreshed)
        return refreshed
