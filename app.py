import streamlit as st
import pandas as pd
import sys
import os
import tempfile
from io import BytesIO
from pathlib import Path
from reportlab.lib.pagesizes import A4
from reportlab.lib import colors
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer
from reportlab.lib.enums import TA_CENTER

# Reconciliation modules live beside their tests, imported by bare name
sys.path.insert(0, str(Path(__file__).resolve().parent / "rostersync" / "reconciliation"))
from reconcile_pipeline import (
    run_reconciliation,
    STUDENT_SHEET,
    UNPROCESSED_SHEET,
    PROFILE_SHEET,
)
from record_builder import ACADEMIC_YEAR, TERM
from workbook_io import (
    EXCEL_ENGINE,
    ReconciliationError,
    read_all_sheets_raw,
    read_first_sheet,
)

# Page config
st.set_page_config(
    page_title="Rostersync Student Profile Builder",
    page_icon="🗂️",
    layout="wide",
    initial_sidebar_state="expanded"
)

st.markdown("""
<style>
    :root {
        --primary-color: #1e3a8a;
        --accent-color: #10b981;
        --text-light: #6b7280;
        --border-color: #e5e7eb;
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}

    h1 {
        color: var(--primary-color);
        font-weight: 700;
        letter-spacing: -0.02em;
    }

    .subtitle {
        color: var(--text-light);
        font-size: 1.1rem;
        margin-bottom: 2rem;
        padding-bottom: 1.5rem;
        border-bottom: 2px solid var(--border-color);
    }

    [data-testid="stMetricValue"] {
        font-weight: 700;
        color: var(--primary-color);
    }

    .stDownloadButton > button {
        background-color: var(--accent-color);
        color: white;
        border: none;
        border-radius: 0.5rem;
        font-weight: 600;
    }
</style>
""", unsafe_allow_html=True)


# PDF Generation
def generate_run_summary_pdf(summary_text, academic_year, term):
    """Render the run summary as a one-document PDF"""
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, topMargin=0.75*inch, bottomMargin=0.75*inch)
    story = []

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        'SummaryTitle',
        parent=styles['Heading1'],
        fontSize=22,
        textColor=colors.HexColor('#1e3a8a'),
        spaceAfter=6,
        alignment=TA_CENTER
    )
    subtitle_style = ParagraphStyle(
        'SummarySubtitle',
        parent=styles['Normal'],
        fontSize=11,
        textColor=colors.HexColor('#6b7280'),
        spaceAfter=20,
        alignment=TA_CENTER
    )
    heading_style = ParagraphStyle(
        'SummaryHeading',
        parent=styles['Heading2'],
        fontSize=13,
        textColor=colors.HexColor('#1e3a8a'),
        spaceBefore=10,
        spaceAfter=6
    )
    body_style = ParagraphStyle(
        'SummaryBody',
        parent=styles['Normal'],
        fontSize=9,
        textColor=colors.HexColor('#1f2937'),
        spaceAfter=3,
        leading=12
    )

    story.append(Paragraph("Student Profile Reconciliation", title_style))
    story.append(Paragraph(f"{academic_year} | {term}", subtitle_style))

    for line in summary_text.split('\n'):
        line = line.strip()
        if not line or '═' in line or line == "ROSTERSYNC RUN SUMMARY":
            continue
        # Section headers are all caps with no counts
        if line.isupper() and ':' not in line:
            story.append(Spacer(1, 0.1*inch))
            story.append(Paragraph(line, heading_style))
        elif line.startswith('Unprocessed') or line.startswith('Processed'):
            story.append(Paragraph(f"<b>{_escape(line)}</b>", body_style))
        else:
            story.append(Paragraph(_escape(line), body_style))

    doc.build(story)
    buffer.seek(0)
    return buffer


def _escape(text):
    return text.replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')


def counts_table(counts):
    """Kind/Rows frame for the on-screen count tables"""
    return pd.DataFrame(
        [{"Kind": kind, "Rows": count} for kind, count in counts.items()],
        columns=["Kind", "Rows"],
    )


def save_upload(upload, directory):
    path = os.path.join(directory, upload.name)
    with open(path, "wb") as f:
        f.write(upload.getbuffer())
    return path


def workbook_bytes(sheets):
    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine=EXCEL_ENGINE) as writer:
        for sheet_name, frame in sheets.items():
            frame.to_excel(writer, sheet_name=sheet_name, index=False)
    buffer.seek(0)
    return buffer


# Header
st.markdown("# 🗂️ Rostersync Student Profile Builder")
st.markdown(
    f'<div class="subtitle">Workload → User Profile → Student Profile | {ACADEMIC_YEAR}, {TERM}</div>',
    unsafe_allow_html=True
)

# Sidebar
with st.sidebar:
    st.markdown("## About This Tool")
    st.markdown("""
    **Inputs:**
    - Teacher workload workbook (one sheet per department)
    - Sub-code / subject table
    - Class list

    **Class list columns:**
    - Form, Class, TSSSID, Class no
    - CHI, MATHS, RSE, ENG (teacher codes)
    - M1&2, X1, X2, X3

    **Outputs:**
    - Student profile (with an Unprocessed sheet)
    - User profile, before and after verification
    """)
    verbose = st.checkbox("Show every resolution event", value=False)

st.markdown("## Upload Workbooks")
col1, col2, col3 = st.columns(3)

with col1:
    workload_upload = st.file_uploader("Teacher workload", type=['xlsx'])
with col2:
    reference_upload = st.file_uploader("Sub-code / subject table", type=['xlsx', 'csv'])
with col3:
    class_list_upload = st.file_uploader("Class list", type=['xlsx', 'csv'])

uploads = (workload_upload, reference_upload, class_list_upload)

if all(upload is not None for upload in uploads):
    if st.button("🚀 Build Student Profile", type="primary", use_container_width=True):
        try:
            with st.spinner("Reconciling workbooks..."):
                with tempfile.TemporaryDirectory() as tmp:
                    workload_sheets = read_all_sheets_raw(save_upload(workload_upload, tmp), "Workload")
                    reference_df = read_first_sheet(save_upload(reference_upload, tmp), "Reference table")
                    class_list_df = read_first_sheet(save_upload(class_list_upload, tmp), "Class list")
                result = run_reconciliation(
                    workload_sheets, reference_df, class_list_df,
                    input_files={
                        "Workload": workload_upload.name,
                        "Reference": reference_upload.name,
                        "Class list": class_list_upload.name,
                    },
                )
        except ReconciliationError as e:
            st.error(f"❌ {e.reason}: {e.affected_file}")
            st.code(str(e), language=None)
            st.stop()

        summary = result.summary
        st.success(f"✅ **Reconciliation complete.** {summary.processed_count:,} student records built")

        st.markdown("### Key Figures")
        m1, m2, m3, m4 = st.columns(4)
        m1.metric("Student Records", f"{summary.processed_count:,}")
        m2.metric("Unprocessed Rows", f"{summary.unprocessed_count:,}")
        m3.metric("First-Level Invalid", f"{summary.first_level_invalid_count:,}")
        m4.metric("Deferred Recovered", f"{sum(summary.deferred_recovered.values()):,}")

        tab1, tab2, tab3, tab4 = st.tabs(
            ["📄 Student Profile", "⚠️ Unprocessed", "👤 User Profile", "🧾 Run Summary"]
        )

        with tab1:
            st.dataframe(result.student_profile, use_container_width=True)
            st.download_button(
                label="📥 Download Student Profile (XLSX)",
                data=workbook_bytes({
                    STUDENT_SHEET: result.student_profile,
                    UNPROCESSED_SHEET: result.unprocessed_frame,
                }),
                file_name="student_profile.xlsx",
                mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
                use_container_width=True
            )

        with tab2:
            if summary.unprocessed:
                st.dataframe(counts_table(summary.unprocessed_by_kind()), hide_index=True)
                st.dataframe(result.unprocessed_frame, use_container_width=True)
            else:
                st.info("Every eligible row produced a record")

        with tab3:
            st.dataframe(result.verified_profile, use_container_width=True)
            st.download_button(
                label="📥 Download Verified User Profile (XLSX)",
                data=workbook_bytes({PROFILE_SHEET: result.verified_profile}),
                file_name="verified_user_profile.xlsx",
                mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
                use_container_width=True
            )

        with tab4:
            st.text(summary.as_text())
            if summary.match_kinds:
                st.markdown("#### Resolution match kinds")
                st.dataframe(counts_table(summary.match_kinds), hide_index=True)
            if verbose:
                with st.expander(f"Resolution events ({len(result.events)})", expanded=False):
                    st.text("\n".join(event.as_text() for event in result.events.events))
            st.download_button(
                label="📥 Download Run Summary (PDF)",
                data=generate_run_summary_pdf(summary.as_text(), ACADEMIC_YEAR, TERM),
                file_name="run_summary.pdf",
                mime="application/pdf",
                use_container_width=True
            )
else:
    st.info("👆 Upload all three workbooks to get started")
