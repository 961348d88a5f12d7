"""Result dataclasses returned by provisioning runs."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ProvisionResult:
    os_type: str = ''
    stages_run: list[str] = field(default_factory=list)
    stages_skipped: list[str] = field(default_factory=list)
    client_exit_code: int | None = None
    cleanup_done: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            'os_type': self.os_type,
            'stages_run': list(self.stages_run),
            'stages_skipped': list(self.stages_skipped),
            'client_exit_code': self.client_exit_code,
            'cleanup_done': self.cleanup_done,
        }


@dataclass
class UploadResult:
    destination: str
    archived: bool = False
    extracted_to: str = ''

    def as_dict(self) -> dict[str, object]:
        return {
            'destination': self.destination,
            'archived': self.archived,
            'extracted_to': self.extracted_to,
        }
