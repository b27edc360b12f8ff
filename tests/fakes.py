"""
In-memory collaborators for the orchestrator and HTTP tests.
"""
from typing import Optional
from unittest.mock import MagicMock

from app.modules.pac_client import PacClient, PacConfiguration, PacCredentials
from app.services.cfdi_store import StampRecord, StampStatus

COMPANY = "company-1"


class FakeStore:
    """In-memory stand-in for CfdiStore."""

    def __init__(self, config: Optional[PacConfiguration] = None):
        self.db = MagicMock()
        self.config = config
        self.records: dict[str, StampRecord] = {}
        self.writes: list[tuple] = []

    def add(self, record_id: str, document: dict, status: StampStatus = StampStatus.PENDING,
            **fields) -> StampRecord:
        record = StampRecord(id=record_id, company_id=COMPANY, document=document,
                             status=status, **fields)
        self.records[record_id] = record
        return record

    def get_pac_configuration(self, company_id):
        return self.config

    def get_record(self, record_id, company_id):
        record = self.records.get(record_id)
        if record is None or record.company_id != company_id:
            return None
        return record

    def insert_record(self, company_id, document, employee_id=None, payroll_run_id=None,
                      previous_record_id=None):
        record_id = f"rec-{len(self.records) + 1}"
        return self.add(record_id, document, employee_id=employee_id,
                        payroll_run_id=payroll_run_id, previous_record_id=previous_record_id)

    def mark_stamped(self, record_id, uuid, stamped_xml, stamped_at=None):
        self.writes.append(("stamped", record_id))
        self.records[record_id] = self.records[record_id].model_copy(update={
            "status": StampStatus.STAMPED, "uuid": uuid, "stamped_xml": stamped_xml,
            "error_message": None, "stamped_at": stamped_at,
        })

    def mark_error(self, record_id, reason, failed_at=None):
        self.writes.append(("error", record_id))
        self.records[record_id] = self.records[record_id].model_copy(update={
            "status": StampStatus.ERROR, "uuid": None, "stamped_xml": None,
            "error_message": reason, "stamped_at": failed_at,
        })

    def find_pending(self, company_id, employee_id):
        pending = [r for r in self.records.values()
                   if r.employee_id == employee_id and r.status == StampStatus.PENDING]
        return pending[-1].id if pending else None

    def list_pending_for_run(self, company_id, payroll_run_id):
        return [r.id for r in self.records.values()
                if r.payroll_run_id == payroll_run_id and r.status == StampStatus.PENDING]


class StubPac(PacClient):
    """PAC client returning a fixed result and counting calls."""

    def __init__(self, result=None, error: Optional[BaseException] = None):
        super().__init__()
        self.result = result
        self.error = error
        self.calls = 0

    async def stamp(self, document, credentials, sandbox):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


def pac_config(provider: str = "finkok", username: str = "user", password: str = "pwd"):
    return PacConfiguration(
        provider=provider,
        credentials=PacCredentials(username=username, password=password),
        sandbox=True,
    )


def audit_actions(store: FakeStore) -> list[str]:
    return [c.args[0]["action"] for c in store.db.table.return_value.insert.call_args_list]
