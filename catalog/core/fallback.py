"""
Manual fallback messages for inquiries whose notification could not be sent.

The caller shows the prepared message (or opens one of its URLs) so the
visitor can deliver the inquiry by hand.

Property of Uncompromising Sensors LLC.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence
from urllib.parse import quote

from .models import Inquiry


@dataclass(frozen=True)
class FallbackMessage:
    recipients: List[str] = field(default_factory=list)
    subject: str = ''
    body: str = ''
    mailtoUrl: str = ''
    whatsappUrl: Optional[str] = None


def composeSubject(inquiry: Inquiry) -> str:
    if inquiry.propertyTitle:
        return f"Inquiry about {inquiry.propertyTitle}"
    if inquiry.contactType:
        return f"Inquiry ({inquiry.contactType})"
    return "Inquiry"


def composeBody(inquiry: Inquiry) -> str:
    lines = [f"Name: {inquiry.name}", f"Email: {inquiry.email}"]
    if inquiry.phone:
        lines.append(f"Phone: {inquiry.phone}")
    if inquiry.propertyId is not None:
        lines.append(f"Property: {inquiry.propertyTitle or 'untitled'} (#{inquiry.propertyId})")
    lines.extend(['', 'Message:', inquiry.message])
    return '\n'.join(lines)


def composeFallback(inquiry: Inquiry, recipients: Sequence[str], whatsappNumber: Optional[str] = None) -> FallbackMessage:
    """Prepared mailto (and optional WhatsApp) message carrying the whole inquiry"""
    recipients = [r.strip() for r in recipients if r and r.strip()]
    subject = composeSubject(inquiry)
    body = composeBody(inquiry)

    mailtoUrl = f"mailto:{','.join(recipients)}?subject={quote(subject)}&body={quote(body)}"

    whatsappUrl = None
    if whatsappNumber:
        digits = ''.join(ch for ch in whatsappNumber if ch.isdigit())
        text = subject + '\n\n' + body
        whatsappUrl = f"https://wa.me/{digits}?text={quote(text)}"

    return FallbackMessage(recipients=recipients, subject=subject, body=body,
                           mailtoUrl=mailtoUrl, whatsappUrl=whatsappUrl)
