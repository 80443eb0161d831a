"""Printable prescription documents.

Prescriptions are rendered to a single A4 PDF with ReportLab: a letterhead
for the prescribing doctor, the patient block, the medicine table, notes,
standard instructions, follow-up dates and a signature block. Long tables
continue on additional pages.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from io import BytesIO
from pathlib import Path
from typing import List, Optional

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from clinic.models import Doctor, Prescription, parse_timestamp, utc_now

LOGGER = logging.getLogger(__name__)

PAGE_WIDTH, PAGE_HEIGHT = A4
LEFT_MARGIN = 20 * mm
RIGHT_MARGIN = PAGE_WIDTH - 20 * mm
TOP_MARGIN = PAGE_HEIGHT - 18 * mm
BOTTOM_MARGIN = 25 * mm
DISPLAY_DATE_FORMAT = "%d/%m/%Y"

FOLLOW_UP_DAYS = 7
VALIDITY_DAYS = 30

STANDARD_INSTRUCTIONS = (
    "Take medicines as prescribed",
    "Complete the full course",
    "Store in cool, dry place",
    "Keep away from children",
)

# Column x offsets for: #, medicine, dosage, duration, instructions.
_COLUMNS = (0, 10 * mm, 60 * mm, 95 * mm, 125 * mm)
_COLUMN_TITLES = ("#", "Medicine", "Dosage", "Duration", "Instructions")


def document_id(prescription: Prescription) -> str:
    return f"SC-{prescription.id[-6:].upper()}"


class _PageWriter:
    """Tracks the vertical cursor and starts new pages as needed."""

    def __init__(self, pdf: canvas.Canvas, footer: str) -> None:
        self.pdf = pdf
        self.footer = footer
        self.y = TOP_MARGIN
        self.page = 1

    def ensure_space(self, height: float) -> bool:
        if self.y - height >= BOTTOM_MARGIN:
            return False
        self._draw_footer()
        self.pdf.showPage()
        self.page += 1
        self.y = TOP_MARGIN
        return True

    def text(self, value: str, *, x: float = LEFT_MARGIN, font: str = "Helvetica", size: int = 10, step: float = 5 * mm) -> None:
        self.ensure_space(step)
        self.pdf.setFont(font, size)
        self.pdf.drawString(x, self.y, value)
        self.y -= step

    def rule(self, gap: float = 4 * mm) -> None:
        self.ensure_space(gap)
        self.pdf.line(LEFT_MARGIN, self.y, RIGHT_MARGIN, self.y)
        self.y -= gap

    def skip(self, amount: float) -> None:
        self.y -= amount

    def finish(self) -> None:
        self._draw_footer()
        self.pdf.showPage()

    def _draw_footer(self) -> None:
        self.pdf.setFont("Helvetica", 7)
        self.pdf.drawCentredString(PAGE_WIDTH / 2, 12 * mm, self.footer)
        self.pdf.drawRightString(RIGHT_MARGIN, 8 * mm, f"Page {self.page}")


def _display_date(value: Optional[datetime]) -> str:
    return value.strftime(DISPLAY_DATE_FORMAT) if value else "-"


def _draw_header(writer: _PageWriter, doctor: Doctor, issued_on: datetime) -> None:
    pdf = writer.pdf
    pdf.setFont("Helvetica-Bold", 18)
    pdf.drawString(LEFT_MARGIN, writer.y, doctor.display_name)
    pdf.setFont("Helvetica", 9)
    pdf.drawRightString(RIGHT_MARGIN, writer.y, f"Reg. No: {doctor.registration_number or '-'}")
    pdf.drawRightString(RIGHT_MARGIN, writer.y - 5 * mm, f"Date: {_display_date(issued_on)}")
    writer.skip(7 * mm)

    for line in (doctor.qualifications, doctor.specialty, doctor.clinic_address):
        if line:
            writer.text(line, size=9, step=4.5 * mm)
    contact = " | ".join(part for part in (doctor.phone, doctor.email) if part)
    if contact:
        writer.text(contact, size=9, step=4.5 * mm)
    writer.skip(2 * mm)
    writer.rule()


def _draw_patient(writer: _PageWriter, prescription: Prescription) -> None:
    writer.text("PATIENT INFORMATION", font="Helvetica-Bold", size=11, step=6 * mm)
    writer.text(f"Name: {prescription.patient_name}")
    writer.text(f"Patient ID: {prescription.patient_id}")
    writer.text(f"Date: {_display_date(prescription.created_at)}")
    if prescription.appointment_id:
        writer.text(f"Appointment ID: {prescription.appointment_id}")
    writer.skip(2 * mm)
    writer.rule()


def _wrap(value: str, width: float, size: int = 9) -> List[str]:
    return simpleSplit(value or "-", "Helvetica", size, width) or ["-"]


def _draw_table_header(writer: _PageWriter) -> None:
    writer.pdf.setFont("Helvetica-Bold", 9)
    for offset, title in zip(_COLUMNS, _COLUMN_TITLES):
        writer.pdf.drawString(LEFT_MARGIN + offset, writer.y, title)
    writer.skip(2 * mm)
    writer.rule(gap=4 * mm)


def _draw_medicines(writer: _PageWriter, prescription: Prescription) -> None:
    writer.text("PRESCRIPTION", font="Helvetica-Bold", size=11, step=6 * mm)
    writer.text("Rx", font="Helvetica-Bold", size=14, step=7 * mm)
    _draw_table_header(writer)

    widths = [b - a - 2 * mm for a, b in zip(_COLUMNS, _COLUMNS[1:] + (RIGHT_MARGIN - LEFT_MARGIN,))]
    for index, medicine in enumerate(prescription.medicines, start=1):
        cells = (
            [str(index)],
            _wrap(medicine.name, widths[1]),
            _wrap(medicine.dosage, widths[2]),
            _wrap(medicine.duration, widths[3]),
            _wrap(medicine.instructions or "", widths[4]),
        )
        row_height = max(len(cell) for cell in cells) * 4.5 * mm + 1.5 * mm
        if writer.ensure_space(row_height):
            _draw_table_header(writer)
        writer.pdf.setFont("Helvetica", 9)
        for offset, lines in zip(_COLUMNS, cells):
            for line_number, line in enumerate(lines):
                writer.pdf.drawString(LEFT_MARGIN + offset, writer.y - line_number * 4.5 * mm, line)
        writer.skip(row_height)
    writer.rule()


def _draw_notes(writer: _PageWriter, prescription: Prescription) -> None:
    if prescription.notes:
        writer.text("Doctor's Notes:", font="Helvetica-Bold", size=10)
        for line in simpleSplit(prescription.notes, "Helvetica", 9, RIGHT_MARGIN - LEFT_MARGIN):
            writer.text(line, size=9, step=4.5 * mm)
        writer.skip(2 * mm)

    writer.text("Important Instructions:", font="Helvetica-Bold", size=10)
    for instruction in STANDARD_INSTRUCTIONS:
        writer.text(f"• {instruction}", x=LEFT_MARGIN + 3 * mm, size=9, step=4.5 * mm)
    writer.skip(2 * mm)


def _draw_follow_up_and_signature(writer: _PageWriter, doctor: Doctor, issued_on: datetime) -> None:
    writer.ensure_space(30 * mm)
    pdf = writer.pdf
    top = writer.y
    pdf.setFont("Helvetica-Bold", 10)
    pdf.drawString(LEFT_MARGIN, top, "Follow-up:")
    pdf.setFont("Helvetica", 9)
    pdf.drawString(LEFT_MARGIN, top - 5 * mm, f"Next visit: {_display_date(issued_on + timedelta(days=FOLLOW_UP_DAYS))}")
    pdf.drawString(LEFT_MARGIN, top - 10 * mm, f"Valid until: {_display_date(issued_on + timedelta(days=VALIDITY_DAYS))}")

    signature_x = RIGHT_MARGIN - 55 * mm
    pdf.line(signature_x, top - 12 * mm, RIGHT_MARGIN, top - 12 * mm)
    pdf.setFont("Helvetica-Bold", 8)
    pdf.drawString(signature_x, top - 16 * mm, doctor.display_name)
    pdf.setFont("Helvetica", 8)
    pdf.drawString(signature_x, top - 20 * mm, doctor.qualifications or "")
    pdf.drawString(signature_x, top - 24 * mm, f"Reg. No: {doctor.registration_number or '-'}")
    writer.skip(28 * mm)


def render_prescription_pdf(
    prescription: Prescription,
    doctor: Doctor,
    *,
    generated_at: Optional[datetime] = None,
) -> bytes:
    """Render ``prescription`` as PDF bytes."""

    generated_at = generated_at or utc_now()
    issued_on = parse_timestamp(prescription.date_created) or generated_at
    footer = (
        "This is a computer generated prescription | "
        f"Document ID: {document_id(prescription)} | "
        f"Generated on: {generated_at.strftime('%d/%m/%Y, %H:%M:%S')}"
    )

    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    pdf.setTitle(f"Prescription {document_id(prescription)}")
    pdf.setAuthor(doctor.display_name)

    writer = _PageWriter(pdf, footer)
    _draw_header(writer, doctor, issued_on)
    _draw_patient(writer, prescription)
    _draw_medicines(writer, prescription)
    _draw_notes(writer, prescription)
    _draw_follow_up_and_signature(writer, doctor, issued_on)
    writer.finish()
    pdf.save()

    LOGGER.info(
        "Rendered prescription %s (%d medicines, %d pages)",
        prescription.id,
        len(prescription.medicines),
        writer.page,
    )
    return buffer.getvalue()


def write_prescription_pdf(
    prescription: Prescription,
    doctor: Doctor,
    output_path: Path | str,
    *,
    generated_at: Optional[datetime] = None,
) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(render_prescription_pdf(prescription, doctor, generated_at=generated_at))
    LOGGER.info("Prescription PDF written to %s", output_path)
    return output_path
