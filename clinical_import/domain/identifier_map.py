"""Identifier Map - run-scoped translation of file ids to store surrogates.

Every reconciliation run owns exactly one IdentifierMap. Keys that a file uses
to reference its own records (patient natural keys, file-local patient
numbers, temporary visit ids) are bound to the surrogate keys the store
assigned. Bindings are monotonic: once a key is bound, rebinding it to a
different surrogate raises.

Temporary visit ids are scoped to the owning patient: two patients may use the
same file-local visit id, and a visit reference only ever resolves to a visit
of the patient that carries it.
"""

from typing import Any, Dict, Optional, Tuple


class IdentifierConflictError(ValueError):
    """Raised when a key would be rebound to a different surrogate."""
    pass


class IdentifierMap:
    """Arena of the surrogate keys created or resolved during one run."""

    def __init__(self):
        self.patients: Dict[str, int] = {}
        self.original_patients: Dict[str, int] = {}
        self.visits: Dict[Tuple[int, str], int] = {}
        self.default_visits: Dict[int, int] = {}
        self._patient_visits: Dict[int, list[int]] = {}
        self._visit_owners: Dict[int, int] = {}

    @staticmethod
    def _bind(index: Dict, key: Any, surrogate: int, kind: str) -> None:
        existing = index.get(key)
        if existing is not None and existing != surrogate:
            raise IdentifierConflictError(
                f"{kind} key {key!r} already bound to {existing}, cannot rebind to {surrogate}"
            )
        index[key] = surrogate

    def bind_patient(self, natural_key: str, surrogate: int, original_num: Optional[str] = None) -> None:
        """Bind a patient natural key (and optional file-local number)."""
        self._bind(self.patients, natural_key, surrogate, "Patient")
        if original_num is not None:
            self._bind(self.original_patients, str(original_num), surrogate, "Original patient")

    def bind_visit(self, temp_id: Any, surrogate: int, patient_num: int) -> None:
        """Bind a temporary visit id within the scope of its patient."""
        self._bind(self.visits, (patient_num, str(temp_id)), surrogate, "Visit")
        self._visit_owners[surrogate] = patient_num
        self._patient_visits.setdefault(patient_num, []).append(surrogate)

    def bind_default_visit(self, patient_num: int, surrogate: int) -> None:
        self._bind(self.default_visits, patient_num, surrogate, "Default visit")
        self._visit_owners[surrogate] = patient_num

    def resolve_patient(self, natural_key: Optional[str] = None, original_num: Optional[str] = None) -> Optional[int]:
        """Resolve a patient surrogate by natural key, then by file-local number."""
        if natural_key is not None and natural_key in self.patients:
            return self.patients[natural_key]
        if original_num is not None:
            return self.original_patients.get(str(original_num))
        return None

    def resolve_visit(self, temp_id: Any, patient_num: int) -> Optional[int]:
        """Resolve a temporary visit id among the visits of one patient."""
        if temp_id is None:
            return None
        return self.visits.get((patient_num, str(temp_id)))

    def visit_owner(self, surrogate: int) -> Optional[int]:
        """Patient surrogate owning a visit created during this run."""
        return self._visit_owners.get(surrogate)

    def first_visit_for(self, patient_num: int) -> Optional[int]:
        """First visit created for the patient during this run."""
        visits = self._patient_visits.get(patient_num)
        return visits[0] if visits else None

    def default_visit_for(self, patient_num: int) -> Optional[int]:
        return self.default_visits.get(patient_num)

    def natural_key_for(self, surrogate: int) -> Optional[str]:
        """Reverse lookup of a patient surrogate."""
        for key, value in self.patients.items():
            if value == surrogate:
                return key
        return None

    def visit_key_for(self, surrogate: int) -> Optional[str]:
        """Reverse lookup of a visit surrogate."""
        for (_, temp_id), value in self.visits.items():
            if value == surrogate:
                return temp_id
        return None

    def __len__(self) -> int:
        return len(self.patients) + len(self.visits)

    def __contains__(self, natural_key: object) -> bool:
        return natural_key in self.patients

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        visits: Dict[str, Dict[str, int]] = {}
        for (patient_num, temp_id), surrogate in self.visits.items():
            visits.setdefault(str(patient_num), {})[temp_id] = surrogate
        return {
            "patients": dict(self.patients),
            "original_patients": dict(self.original_patients),
            "visits": visits,
            "default_visits": {str(k): v for k, v in self.default_visits.items()},
        }

    def __repr__(self) -> str:
        return (
            f"IdentifierMap(patients={len(self.patients)}, visits={len(self.visits)}, "
            f"default_visits={len(self.default_visits)})"
        )
