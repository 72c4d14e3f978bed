"""Plain-text assignment notices.

HTML templating lives outside this service; the notice carries only the
facts a responder needs to act on.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..models import IncidentReport


@dataclass(frozen=True)
class Message:
    subject: str
    body: str


def _incident_block(incident: IncidentReport) -> str:
    lines = [
        f"Incident ID: #{incident.id}",
        f"Type: {incident.report_type}",
        f"Priority: {(incident.priority or '').upper()}",
        f"Location: {incident.location_text}",
    ]
    if incident.latitude is not None and incident.longitude is not None:
        lines.append(f"GPS Coordinates: {incident.latitude}, {incident.longitude}")
    lines.append(f"Description: {incident.narrative}")
    if incident.reported_at:
        lines.append(f"Reported: {incident.reported_at:%Y-%m-%d %H:%M} UTC")
    return "\n".join(lines)


_FOOTER = (
    "Please review the incident details and take appropriate action.\n"
    "You can update the status and add notes in the incident management system.\n\n"
    "This is an automated notification. Please do not reply to this email."
)


def team_assignment_message(
    incident: IncidentReport,
    team_name: str,
    eligible_members: int,
    team_description: Optional[str] = None,
) -> Message:
    body = "\n\n".join([
        "Your team has been assigned to an incident.",
        _incident_block(incident),
        "\n".join([
            f"Team: {team_name}",
            f"Team description: {team_description or 'No description available'}",
            f"Team members on duty: {eligible_members}",
        ]),
        _FOOTER,
    ])
    return Message(subject=f"INCIDENT ASSIGNMENT - Team {team_name}", body=body)


def staff_assignment_message(
    incident: IncidentReport,
    staff_name: str,
    position: Optional[str] = None,
) -> Message:
    body = "\n\n".join([
        "You have been assigned to an incident.",
        _incident_block(incident),
        "\n".join([
            f"Assigned to: {staff_name}",
            f"Position: {position or '-'}",
        ]),
        _FOOTER,
    ])
    return Message(subject=f"INCIDENT ASSIGNMENT - {staff_name}", body=body)
