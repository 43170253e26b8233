"""
Framework alignment — groups flagged records by the HIPAA Security Rule,
NIST 800-53 and CIS Microsoft 365 controls their flags reference.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from .engine import record_label
from ..models import Record

FRAMEWORKS = {
    "HIPAA": "HIPAA Security Rule (45 CFR 164 Subpart C)",
    "NIST": "NIST SP 800-53 Rev 5",
    "CIS": "CIS Microsoft 365 Foundations Benchmark",
}

# ---------------------------------------------------------------------------
# NIST 800-53 Rev 5 control families
# ---------------------------------------------------------------------------
NIST_FAMILIES = {
    "AC":  "Access Control",
    "AU":  "Audit and Accountability",
    "CA":  "Assessment, Authorization, and Monitoring",
    "CM":  "Configuration Management",
    "IA":  "Identification and Authentication",
    "IR":  "Incident Response",
    "RA":  "Risk Assessment",
    "SC":  "System and Communications Protection",
    "SI":  "System and Information Integrity",
}

# ---------------------------------------------------------------------------
# CIS Microsoft 365 Benchmark sections
# ---------------------------------------------------------------------------
CIS_SECTIONS = {
    "1": "Microsoft 365 admin center",
    "2": "Microsoft 365 Defender",
    "5": "Microsoft Entra admin center",
    "6": "Exchange admin center",
    "7": "SharePoint admin center",
}

# ---------------------------------------------------------------------------
# HIPAA Security Rule standards referenced by the built-in rules
# ---------------------------------------------------------------------------
HIPAA_STANDARDS = {
    "164.308(a)(1)(ii)(D)": "Information system activity review",
    "164.308(a)(3)(ii)(C)": "Termination procedures",
    "164.308(a)(4)": "Information access management",
    "164.308(a)(6)(ii)": "Response and reporting",
    "164.312(a)(1)": "Access control",
    "164.312(b)": "Audit controls",
    "164.312(d)": "Person or entity authentication",
    "164.312(e)(1)": "Transmission security",
}


def describe_control(ref: str) -> str:
    """Human title for a control reference, best effort."""
    framework, _, cid = ref.partition(":")
    if framework == "HIPAA":
        return HIPAA_STANDARDS.get(cid, "")
    if framework == "NIST":
        return NIST_FAMILIES.get(cid.split("-")[0], "")
    if framework == "CIS":
        return CIS_SECTIONS.get(cid.split(".")[0], "")
    return ""


@dataclass
class ControlMapping:
    """Flagged records grouped by framework, then by control reference."""
    frameworks: dict[str, dict[str, list[dict]]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            framework: {
                "name": FRAMEWORKS.get(framework, framework),
                "controls": {
                    ref: {
                        "title": describe_control(ref),
                        "count": len(items),
                        "records": items,
                    }
                    for ref, items in sorted(controls.items())
                },
            }
            for framework, controls in sorted(self.frameworks.items())
        }


def build_control_mapping(records: Iterable[Record]) -> ControlMapping:
    """
    Build the control mapping from evaluated records. Each (record, flag)
    pair is listed under every control the flag references.
    """
    mapping = ControlMapping()

    for record in records:
        for name, flag in record.risk_flags.items():
            summary = {
                "record_kind": record.record_kind,
                "subject": record_label(record),
                "flag": name,
                "severity": flag.severity,
            }
            for ref in flag.controls:
                framework = ref.split(":", 1)[0]
                mapping.frameworks.setdefault(framework, {}).setdefault(ref, []).append(summary)

    return mapping
