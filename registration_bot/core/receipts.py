from datetime import datetime
from decimal import Decimal
from io import BytesIO
from typing import List, Optional
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas
from .normalizers import format_brl, format_datetime_br


def render_receipt_pdf(
    event_name: str,
    participant_names: List[str],
    provider_payment_id: str,
    total: Optional[Decimal] = None,
    paid_at: Optional[datetime] = None,
) -> bytes:
    """
    Gera o comprovante de pagamento (A4): evento, pagamento e a lista de
    participantes, quebrando página quando a lista não cabe.
    """
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    width, height = A4

    x = 50
    y = height - 60

    c.setFont("Helvetica-Bold", 18)
    c.drawString(x, y, "Comprovante de Pagamento")
    y -= 30

    c.setFont("Helvetica", 12)
    c.drawString(x, y, f"Evento: {event_name or 'Evento'}")
    y -= 20
    c.setFont("Helvetica", 11)
    c.drawString(x, y, f"Pagamento: {provider_payment_id}")
    y -= 18
    if total is not None:
        c.drawString(x, y, f"Valor: {format_brl(total)}")
        y -= 18
    if paid_at is not None:
        c.drawString(x, y, f"Pago em: {format_datetime_br(paid_at)}")
        y -= 18
    y -= 12

    c.setFont("Helvetica-Bold", 12)
    c.drawString(x, y, "Participantes:")
    y -= 20

    c.setFont("Helvetica", 10)
    for name in participant_names:
        c.drawString(x + 10, y, f"- {name}")
        y -= 16
        if y < 50:
            c.showPage()
            y = height - 60
            c.setFont("Helvetica-Bold", 12)
            c.drawString(x, y, "Participantes (continua):")
            y -= 20
            c.setFont("Helvetica", 10)

    c.showPage()
    c.save()
    return buf.getvalue()
