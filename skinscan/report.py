"""
PDF reports for completed scans.

Built with fpdf2 using the core Helvetica font, so text is limited to
latin-1.
"""

import io
import logging
from datetime import datetime
from typing import Iterable, Sequence, Tuple

from fpdf import FPDF
from PIL import Image

from skinscan.preprocessing import data_url_to_bytes
from skinscan.results import ScanResult

logger = logging.getLogger(__name__)

HEADER_COLOR = (100, 188, 244)
SEVERITY_COLORS = {
    "high": (239, 68, 68),
    "medium": (245, 158, 11),
    "low": (34, 197, 94),
}
DISCLAIMER = (
    "This report is generated by an AI-powered diagnostic tool for educational "
    "and informational purposes only. It is NOT a substitute for professional "
    "medical advice, diagnosis, or treatment. Always seek the advice of a "
    "qualified healthcare provider with any questions regarding a medical "
    "condition. Never disregard professional medical advice or delay seeking "
    "it because of something you have read in this report."
)


def format_date(value: datetime) -> str:
    """e.g. ``March 5, 2025, 02:30 PM``"""
    return f"{value:%B} {value.day}, {value:%Y, %I:%M %p}"


def format_probability(probability: float) -> str:
    return f"{probability * 100:.2f}%"


def report_filename(scan: ScanResult, today: datetime = None) -> str:
    today = today or datetime.now()
    patient_id = scan.patient.patient_id or "unknown"
    return f"Skin_Analysis_{patient_id}_{today:%Y-%m-%d}.pdf"


def _latin1(text: str) -> str:
    return text.encode("latin-1", "replace").decode("latin-1")


def _require_completed(scan: ScanResult) -> None:
    if scan.top_prediction is None:
        raise ValueError(f"Scan {scan.id} has no predictions to report")


def _header(pdf: FPDF, title: str, subtitle: str = "", height: float = 40) -> None:
    pdf.set_fill_color(*HEADER_COLOR)
    pdf.rect(0, 0, pdf.w, height, style="F")
    pdf.set_text_color(255, 255, 255)
    pdf.set_font("helvetica", style="B", size=22)
    pdf.set_xy(0, 12)
    pdf.cell(pdf.w, 10, title, align="C")
    if subtitle:
        pdf.set_font("helvetica", size=12)
        pdf.set_xy(0, 24)
        pdf.cell(pdf.w, 8, subtitle, align="C")
    pdf.set_text_color(0, 0, 0)


def _two_columns(pdf: FPDF, y: float, left: str, right: str = "") -> None:
    pdf.set_xy(15, y)
    pdf.cell(100, 6, _latin1(left))
    if right:
        pdf.set_xy(120, y)
        pdf.cell(75, 6, _latin1(right))


def generate_pdf_report(scan: ScanResult) -> bytes:
    """
    Render a single-scan report: patient details, primary diagnosis,
    the full probability table and the analysed image.

    Raises:
        ValueError: the scan was rejected and has no predictions
    """
    _require_completed(scan)
    top = scan.top_prediction
    top_class = top.lesion_class
    severity_color = SEVERITY_COLORS[top_class.severity]

    pdf = FPDF(orientation="P", unit="mm", format="A4")
    pdf.set_auto_page_break(auto=False)
    pdf.add_page()
    _header(pdf, "Skin Health Center", "AI-Powered Skin Cancer Detection Report")

    # Patient information
    y = 50.0
    pdf.set_font("helvetica", style="B", size=16)
    pdf.set_xy(15, y)
    pdf.cell(0, 8, "Patient Information")
    y += 10
    pdf.set_font("helvetica", size=11)
    patient = scan.patient
    _two_columns(pdf, y, f"Name: {patient.first_name}", f"Patient ID: {patient.patient_id}")
    y += 7
    _two_columns(pdf, y, f"Age: {patient.age}", f"Gender: {patient.gender}")
    y += 7
    _two_columns(pdf, y, f"Date: {format_date(scan.timestamp)}")
    y += 9
    pdf.set_draw_color(200, 200, 200)
    pdf.line(15, y, pdf.w - 15, y)

    # Primary diagnosis
    y += 6
    pdf.set_font("helvetica", style="B", size=16)
    pdf.set_xy(15, y)
    pdf.cell(0, 8, "Analysis Results")
    y += 10
    pdf.set_fill_color(*severity_color)
    pdf.rect(15, y, pdf.w - 30, 15, style="F")
    pdf.set_text_color(255, 255, 255)
    pdf.set_font("helvetica", style="B", size=14)
    pdf.set_xy(20, y + 4)
    pdf.cell(110, 7, f"Primary Diagnosis: {top_class.name}")
    pdf.set_xy(pdf.w - 75, y + 4)
    pdf.cell(55, 7, f"Confidence: {format_probability(top.probability)}", align="R")
    pdf.set_text_color(0, 0, 0)

    y += 20
    pdf.set_font("helvetica", size=11)
    for label, text in (
        ("Description", top_class.description),
        ("Causes", top_class.causes),
        ("Risk factors", top_class.risk_factors),
        ("Symptoms", top_class.symptoms),
    ):
        pdf.set_xy(15, y)
        pdf.multi_cell(pdf.w - 30, 5, f"{label}: {text}")
        y = pdf.get_y() + 1

    y += 3
    pdf.set_font("helvetica", style="B", size=11)
    pdf.set_xy(15, y)
    pdf.cell(0, 6, "Risk Assessment:")
    y += 6
    pdf.set_font("helvetica", size=11)
    pdf.set_text_color(*severity_color)
    pdf.set_xy(15, y)
    pdf.cell(0, 6, top_class.risk_message)
    pdf.set_text_color(0, 0, 0)

    # Probability table
    y += 10
    pdf.set_font("helvetica", style="B", size=14)
    pdf.set_xy(15, y)
    pdf.cell(0, 8, "Detailed Analysis")
    y += 9
    pdf.set_font("helvetica", style="B", size=10)
    _table_row(pdf, y, "Condition", "Probability")
    y += 6
    pdf.line(15, y, pdf.w - 15, y)
    y += 2
    pdf.set_font("helvetica", size=10)
    bar_width = 40
    for prediction in scan.predictions:
        _table_row(pdf, y, prediction.lesion_class.name, format_probability(prediction.probability))
        pdf.set_draw_color(200, 200, 200)
        pdf.rect(pdf.w - 55, y + 1, bar_width, 4)
        if prediction.probability > 0:
            pdf.set_fill_color(*severity_color)
            pdf.rect(pdf.w - 55, y + 1, bar_width * prediction.probability, 4, style="F")
        y += 7

    # Image, if it fits above the disclaimer
    if y < pdf.h - 110 and scan.image_data_url:
        y += 6
        pdf.set_font("helvetica", style="B", size=14)
        pdf.set_xy(15, y)
        pdf.cell(0, 8, "Analyzed Image")
        y += 9
        image = Image.open(io.BytesIO(data_url_to_bytes(scan.image_data_url))).convert("RGB")
        pdf.image(image, x=15, y=y, w=50, h=50)
        y += 52

    if y > pdf.h - 50:
        pdf.add_page()
        y = 20.0
    else:
        y = pdf.h - 45
    _disclaimer(pdf, y)
    return bytes(pdf.output())


def _table_row(pdf: FPDF, y: float, condition: str, probability: str) -> None:
    pdf.set_xy(15, y)
    pdf.cell(90, 6, condition)
    pdf.set_xy(pdf.w - 85, y)
    pdf.cell(28, 6, probability, align="R")


def _disclaimer(pdf: FPDF, y: float) -> None:
    pdf.set_fill_color(255, 243, 205)
    pdf.rect(15, y, pdf.w - 30, 35, style="F")
    pdf.set_font("helvetica", style="B", size=10)
    pdf.set_xy(20, y + 3)
    pdf.cell(0, 6, "Medical Disclaimer")
    pdf.set_font("helvetica", size=8)
    pdf.set_xy(20, y + 10)
    pdf.multi_cell(pdf.w - 40, 4, DISCLAIMER)


def generate_batch_pdf_report(scans: Sequence[ScanResult], generated_at: datetime = None) -> bytes:
    """Render a scan-history summary, one block per completed scan."""
    generated_at = generated_at or datetime.now()
    completed = [scan for scan in scans if scan.top_prediction is not None]

    pdf = FPDF(orientation="P", unit="mm", format="A4")
    pdf.set_auto_page_break(auto=False)
    pdf.add_page()
    _header(pdf, "Scan History Report", height=30)

    y = 40.0
    pdf.set_font("helvetica", size=12)
    pdf.set_xy(15, y)
    pdf.cell(80, 6, f"Total Scans: {len(completed)}")
    pdf.set_xy(pdf.w - 95, y)
    pdf.cell(80, 6, f"Generated: {format_date(generated_at)}", align="R")
    y += 12

    for index, (scan, lines) in enumerate(_summaries(completed), 1):
        if y > 250:
            pdf.add_page()
            y = 20.0
        pdf.set_font("helvetica", style="B", size=11)
        pdf.set_xy(15, y)
        pdf.cell(0, 6, f"Scan #{index} - {format_date(scan.timestamp)}")
        y += 6
        pdf.set_font("helvetica", size=9)
        for line in lines:
            pdf.set_xy(15, y)
            pdf.cell(0, 5, _latin1(line))
            y += 5
        y += 3
        pdf.set_draw_color(220, 220, 220)
        pdf.line(15, y, pdf.w - 15, y)
        y += 5

    logger.info(f"Batch report generated for {len(completed)} scans")
    return bytes(pdf.output())


def _summaries(scans: Iterable[ScanResult]) -> Iterable[Tuple[ScanResult, Tuple[str, str]]]:
    for scan in scans:
        top = scan.top_prediction
        yield scan, (
            f"Patient: {scan.patient.first_name} (ID: {scan.patient.patient_id})",
            f"Diagnosis: {top.lesion_class.name} ({format_probability(top.probability)})",
        )
