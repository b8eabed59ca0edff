import datetime
import io
import logging
from pathlib import Path
from typing import Any, Callable, Mapping
from xml.sax.saxutils import escape

import pypdf
from jinja2 import Environment, FileSystemLoader, select_autoescape
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

LOG = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
REPORT_TEMPLATE_NAME = "report.html"

RISK_CLASSES = {"low": "risk-low", "medium": "risk-medium", "high": "risk-high"}
RISK_COLORS = {
    "low": ("#dff0d8", "#3c763d"),
    "medium": ("#fcf8e3", "#8a6d3b"),
    "high": ("#f2dede", "#a94442"),
}

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def format_date(value: Any) -> str:
    """US short date without zero padding, e.g. 5/27/2025."""
    if isinstance(value, str):
        try:
            value = datetime.date.fromisoformat(value[:10])
        except ValueError:
            return value
    if isinstance(value, (datetime.date, datetime.datetime)):
        return f"{value.month}/{value.day}/{value.year}"
    return "N/A"


def format_timestamp(value: datetime.datetime) -> str:
    """US date and 12-hour time, e.g. 5/27/2025, 4:40:44 PM."""
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{format_date(value)}, {hour}:{value.minute:02d}:{value.second:02d} {suffix}"


def build_pdf_context(report: Any, generated_at: datetime.datetime) -> dict:
    company = _get(report, "company")
    observations = []
    for obs in _get(report, "observations") or []:
        risk = str(_get(obs, "risk_level") or "low")
        observations.append(
            {
                "text": _get(obs, "observation") or "",
                "risk_level": risk.upper(),
                "risk_class": RISK_CLASSES.get(risk, "risk-low"),
                "image_url": _get(obs, "image_url"),
            }
        )
    return {
        "report_id": _get(report, "id"),
        "company_name": (_get(company, "name") if company else None) or "N/A",
        "date": format_date(_get(report, "date")),
        "contact": _get(report, "contact") or "N/A",
        "status": str(_get(report, "status") or "").upper(),
        "visit_confirmation": "Confirmed" if _get(report, "visit_confirmation") else "Not confirmed",
        "description": _get(report, "description") or "",
        "verification": _get(report, "verification") or "No verification details provided",
        "observations": observations,
        "no_observations": "No observations recorded",
        "recommendations": _get(report, "recommendations") or "No recommendations provided",
        "signature": _get(report, "signature") or "Not signed",
        "generated_at": format_timestamp(generated_at),
    }


def render_report_html(report: Any, generated_at: datetime.datetime) -> str:
    """Same report and timestamp always give the same HTML."""
    context = build_pdf_context(report, generated_at)
    return _env.get_template(REPORT_TEMPLATE_NAME).render(**context)


def _html_to_pdf(html: str, link_callback: Callable[[str, str], str] | None = None) -> bytes:
    from xhtml2pdf import pisa

    out = io.BytesIO()
    kwargs = {"link_callback": link_callback} if link_callback else {}
    result = pisa.CreatePDF(src=html, dest=out, encoding="utf-8", path=str(TEMPLATE_DIR), **kwargs)
    if getattr(result, "err", 0):
        raise RuntimeError(f"xhtml2pdf render failed: err={result.err}")
    return out.getvalue()


def _build_pdf_reportlab(context: dict) -> bytes:
    """Plain reportlab rendering of the same content, images listed by URL."""
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=15 * mm,
        leftMargin=15 * mm,
        topMargin=20 * mm,
        bottomMargin=20 * mm,
    )
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "ReportTitle", parent=styles["Heading1"], alignment=TA_CENTER, textColor=colors.HexColor("#3366cc")
    )
    heading_style = ParagraphStyle(
        "ReportHeading", parent=styles["Heading2"], textColor=colors.HexColor("#3366cc"), spaceBefore=14
    )
    normal_style = ParagraphStyle("ReportNormal", parent=styles["Normal"], fontSize=10, leading=14, spaceAfter=6)
    right_style = ParagraphStyle("ReportRight", parent=normal_style, alignment=TA_RIGHT)

    def p(text: str, style=normal_style) -> Paragraph:
        return Paragraph(escape(str(text)), style)

    story = [
        Paragraph("Health and Safety Report", title_style),
        p(f"Company: {context['company_name']}", ParagraphStyle("c", parent=normal_style, alignment=TA_CENTER)),
        Spacer(1, 10),
    ]
    meta = Table(
        [
            [p(f"Date: {context['date']}"), p(f"Visit Confirmation: {context['visit_confirmation']}")],
            [p(f"Contact: {context['contact']}"), ""],
            [p(f"Status: {context['status']}"), ""],
        ],
        colWidths=[90 * mm, 90 * mm],
    )
    meta.setStyle(TableStyle([("BACKGROUND", (0, 0), (-1, -1), colors.HexColor("#f5f5f5")), ("VALIGN", (0, 0), (-1, -1), "TOP")]))
    story.append(meta)

    story += [Paragraph("Description", heading_style), p(context["description"])]
    story += [Paragraph("Verification", heading_style), p(context["verification"])]
    story.append(Paragraph("Observations and Improvement Opportunities", heading_style))
    if not context["observations"]:
        story.append(p(context["no_observations"]))
    for obs in context["observations"]:
        bg, fg = RISK_COLORS.get(obs["risk_level"].lower(), RISK_COLORS["low"])
        row = Table(
            [[p("Observation"), p(obs["risk_level"])], [p(obs["text"]), ""]],
            colWidths=[150 * mm, 30 * mm],
        )
        row.setStyle(
            TableStyle(
                [
                    ("SPAN", (0, 1), (1, 1)),
                    ("BACKGROUND", (0, 0), (-1, -1), colors.HexColor("#f9f9f9")),
                    ("BACKGROUND", (1, 0), (1, 0), colors.HexColor(bg)),
                    ("TEXTCOLOR", (1, 0), (1, 0), colors.HexColor(fg)),
                    ("LINEBEFORE", (0, 0), (0, -1), 3, colors.HexColor("#dddddd")),
                ]
            )
        )
        story += [row, Spacer(1, 4)]
        if obs["image_url"]:
            story.append(p(f"Image: {obs['image_url']}"))
    story += [Paragraph("Recommendations", heading_style), p(context["recommendations"])]
    story += [Spacer(1, 20), p(f"Professional Signature: {context['signature']}", right_style)]
    story += [Spacer(1, 30), p(f"This report was generated on {context['generated_at']}")]
    doc.build(story)
    return buffer.getvalue()


def _stamp_metadata(pdf_bytes: bytes, context: dict) -> bytes:
    reader = pypdf.PdfReader(io.BytesIO(pdf_bytes))
    writer = pypdf.PdfWriter(clone_from=reader)
    writer.add_metadata(
        {
            "/Title": f"Health and Safety Report - {context['company_name']}",
            "/Subject": f"Report {context['report_id']} ({context['date']})",
            "/Creator": "hs-reports",
        }
    )
    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


def build_report_pdf(
    report: Any,
    generated_at: datetime.datetime | None = None,
    link_callback: Callable[[str, str], str] | None = None,
) -> bytes:
    generated_at = generated_at or datetime.datetime.now()
    context = build_pdf_context(report, generated_at)
    try:
        pdf = _html_to_pdf(render_report_html(report, generated_at), link_callback)
    except Exception as e:
        LOG.warning("HTML to PDF conversion failed, falling back to reportlab: %s", e)
        pdf = _build_pdf_reportlab(context)
    return _stamp_metadata(pdf, context)
