"""
Skin Lesion Scanner
==================================================
Streamlit front end for the two-stage skin lesion pipeline: an image
validity gate followed by a 7-class HAM10000 classifier.
"""

import streamlit as st
import os
import logging
from typing import Dict, List, Optional

import plotly.graph_objects as go
import pandas as pd

from database import ScanDatabase
from skinscan.catalog import LESION_CLASSES
from skinscan.config import ModelConfig
from skinscan.errors import InvalidImageError, SkinScanError
from skinscan.pipeline import InferencePipeline, PipelineState
from skinscan.registry import ModelRegistry
from skinscan.report import (
    format_date,
    format_probability,
    generate_batch_pdf_report,
    generate_pdf_report,
    report_filename,
)
from skinscan.results import PatientData, Prediction, ScanResult, generate_patient_id

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("SKINSCAN_DB_PATH", "data/skin_scans.db")

STATUS_MESSAGES = {
    PipelineState.VALIDATING: "Validating image...",
    PipelineState.CLASSIFYING: "Analyzing skin lesion...",
}

SEVERITY_GAUGE = {
    'low': (25, '#22c55e'),
    'medium': (55, '#f59e0b'),
    'high': (90, '#ef4444'),
}

# ============================================================================
# STREAMLIT CONFIGURATION
# ============================================================================

def init_page_config():
    """Initialize Streamlit page configuration."""
    st.set_page_config(
        page_title="Skin Lesion Scanner",
        layout="wide",
        initial_sidebar_state="expanded",
    )


def load_custom_css():
    st.markdown("""
    <style>
        .prediction-card {
            border-radius: 12px;
            padding: 1.25rem;
            margin: 0.75rem 0;
            box-shadow: 0 2px 8px rgba(0, 0, 0, 0.1);
            border-left: 5px solid #3498db;
        }
        .high-risk { border-left-color: #ef4444; background-color: #fff5f5; }
        .medium-risk { border-left-color: #f59e0b; background-color: #fffef5; }
        .low-risk { border-left-color: #22c55e; background-color: #f5fff8; }
        #MainMenu {visibility: hidden;}
        footer {visibility: hidden;}
    </style>
    """, unsafe_allow_html=True)

# ============================================================================
# MODEL MANAGEMENT
# ============================================================================

@st.cache_resource
def get_registry() -> ModelRegistry:
    """One registry per server process, shared by every session."""
    return ModelRegistry(ModelConfig.from_env())


@st.cache_resource
def get_database() -> ScanDatabase:
    return ScanDatabase(DB_PATH)


def ensure_models_loaded(registry: ModelRegistry) -> bool:
    """Load both models behind a progress bar. Returns False on failure."""
    if registry.is_ready:
        return True

    progress_bar = st.progress(0, text="Preparing AI models...")
    try:
        registry.load_all(
            on_progress=lambda value, status: progress_bar.progress(value, text=status)
        )
    except SkinScanError as e:
        logger.error(f"Model loading failed: {e}", exc_info=True)
        progress_bar.empty()
        st.error(
            "Failed to load AI models. Please check the model files and try again."
        )
        if st.button("Retry loading models"):
            st.rerun()
        return False
    progress_bar.empty()
    st.success("AI models loaded successfully")
    return True

# ============================================================================
# VISUALIZATION COMPONENTS
# ============================================================================

def create_confidence_chart(predictions: List[Prediction]) -> go.Figure:
    """
    Create interactive confidence bar chart.

    Args:
        predictions: Ranked predictions

    Returns:
        Plotly figure object
    """
    names = [p.lesion_class.name for p in predictions]
    confidences = [p.confidence for p in predictions]
    colors = [p.lesion_class.color for p in predictions]

    fig = go.Figure(data=[
        go.Bar(
            x=confidences,
            y=names,
            orientation='h',
            marker=dict(color=colors),
            text=[f'{conf:.2f}%' for conf in confidences],
            textposition='auto',
            hovertemplate='<b>%{y}</b><br>Confidence: %{x:.2f}%<extra></extra>'
        )
    ])
    fig.update_layout(
        title={'text': 'Classification Confidence Scores', 'x': 0.5, 'xanchor': 'center'},
        xaxis_title="Confidence (%)",
        xaxis=dict(range=[0, 100]),
        yaxis=dict(autorange='reversed'),
        height=380,
        showlegend=False,
    )
    return fig


def create_risk_gauge(severity: str) -> go.Figure:
    value, color = SEVERITY_GAUGE.get(severity, (0, '#95a5a6'))
    fig = go.Figure(go.Indicator(
        mode="gauge",
        value=value,
        title={'text': f"Risk: {severity.upper()}", 'font': {'size': 18}},
        gauge={
            'axis': {'range': [0, 100], 'visible': False},
            'bar': {'color': color},
            'steps': [
                {'range': [0, 40], 'color': '#d4edda'},
                {'range': [40, 70], 'color': '#fff3cd'},
                {'range': [70, 100], 'color': '#f8d7da'},
            ],
        }
    ))
    fig.update_layout(height=260, margin=dict(l=20, r=20, t=50, b=20))
    return fig


def display_prediction_card(prediction: Prediction, rank: int, show_details: bool = True) -> None:
    """
    Display formatted prediction card.

    Args:
        prediction: Prediction to show
        rank: Rank of this prediction (1, 2, 3...)
        show_details: Whether to show the catalog text
    """
    lesion = prediction.lesion_class
    html = f"""
    <div class="prediction-card {lesion.severity}-risk">
        <h4 style="margin: 0 0 0.5rem 0;">Rank {rank}: {lesion.name} ({lesion.code.upper()})</h4>
        <div><strong>Confidence:</strong> {format_probability(prediction.probability)}
        &nbsp;|&nbsp; <strong>Severity:</strong> {lesion.severity.upper()}</div>
    """
    if show_details:
        html += f"""
        <p style="margin: 0.5rem 0;"><em>{lesion.description}</em></p>
        <div><strong>Causes:</strong> {lesion.causes}</div>
        <div><strong>Risk factors:</strong> {lesion.risk_factors}</div>
        <div><strong>Symptoms:</strong> {lesion.symptoms}</div>
        <div style="margin-top: 0.5rem;"><strong>{lesion.risk_message}</strong></div>
        """
    html += "</div>"
    st.markdown(html, unsafe_allow_html=True)


def display_scan_result(scan: ScanResult) -> None:
    predictions = list(scan.predictions)
    top = scan.top_prediction

    col_a, col_b = st.columns(2)
    with col_a:
        runner_up = predictions[1].confidence if len(predictions) > 1 else 0.0
        st.metric(
            "Top Confidence",
            format_probability(top.probability),
            delta=f"{top.confidence - runner_up:.1f}% over next",
        )
    with col_b:
        st.plotly_chart(create_risk_gauge(top.lesion_class.severity), use_container_width=True)

    st.subheader("Top 3 Predictions")
    for i, prediction in enumerate(predictions[:3], 1):
        display_prediction_card(prediction, i, show_details=(i == 1))

    st.plotly_chart(create_confidence_chart(predictions), use_container_width=True)

    with st.expander("View All Class Probabilities"):
        df = pd.DataFrame([
            {
                'Rank': i,
                'Class': p.class_name.upper(),
                'Full Name': p.lesion_class.name,
                'Probability (%)': f"{p.confidence:.4f}",
                'Severity': p.lesion_class.severity,
            }
            for i, p in enumerate(predictions, 1)
        ])
        st.dataframe(df, use_container_width=True, hide_index=True)

    st.download_button(
        "Download PDF Report",
        data=generate_pdf_report(scan),
        file_name=report_filename(scan),
        mime="application/pdf",
    )

# ============================================================================
# MAIN APPLICATION
# ============================================================================

def render_sidebar(registry: ModelRegistry) -> PatientData:
    """Render patient form and model status; returns the patient details."""
    st.sidebar.title("Patient")
    if 'generated_patient_id' not in st.session_state:
        st.session_state.generated_patient_id = generate_patient_id()

    first_name = st.sidebar.text_input("First name")
    patient_id = st.sidebar.text_input("Patient ID", value=st.session_state.generated_patient_id)
    username = st.sidebar.text_input("Username", value=st.session_state.get('owner', ''))
    gender = st.sidebar.selectbox("Gender", ["", "M", "F"])
    age = st.sidebar.text_input("Age")

    st.sidebar.markdown("---")
    with st.sidebar.expander("Model Status"):
        info = registry.model_info()
        st.write(f"**Backend:** {info['backend'] or 'not initialized'}")
        for role, details in info['models'].items():
            st.write(f"**{role}:** {details['state']}")
        st.write(f"**Outstanding tensors:** {info['memory']['outstanding']}")

    st.sidebar.markdown("---")
    st.sidebar.markdown("""
    ### Medical Disclaimer
    This tool is for **educational and research purposes only**.
    It is not a substitute for professional medical advice,
    diagnosis, or treatment.
    """)
    return PatientData(
        first_name=first_name.strip(),
        patient_id=patient_id.strip(),
        username=username.strip(),
        gender=gender,
        age=age.strip(),
    )


def validate_patient(patient: PatientData) -> Dict[str, str]:
    """Return an error message per missing or invalid patient field."""
    errors = {}
    if not patient.first_name:
        errors['first_name'] = "First name is required"
    if not patient.patient_id:
        errors['patient_id'] = "Patient ID is required"
    if not patient.username:
        errors['username'] = "Username is required"
    if not patient.gender:
        errors['gender'] = "Gender is required"
    if not patient.age:
        errors['age'] = "Age is required"
    else:
        try:
            age = int(patient.age)
        except ValueError:
            age = 0
        if age < 1 or age > 120:
            errors['age'] = "Please enter a valid age"
    return errors


def render_analysis_tab(registry: ModelRegistry, db: ScanDatabase, patient: PatientData, owner: str):
    col1, col2 = st.columns([1, 1], gap="large")

    with col1:
        st.header("Upload Image")
        uploaded_file = st.file_uploader(
            "Choose a dermoscopic image",
            type=['png', 'jpg', 'jpeg'],
            help="JPEG or PNG, maximum 5MB"
        )
        if uploaded_file is not None:
            st.image(uploaded_file, caption=f"Uploaded: {uploaded_file.name}")

    with col2:
        st.header("Analysis Results")
        if uploaded_file is None:
            st.info("Upload an image to begin analysis")
            return
        errors = validate_patient(patient)
        if errors:
            st.warning("Complete the patient details in the sidebar before analysis:\n\n"
                       + "\n".join(f"- {message}" for message in errors.values()))
            return
        if not ensure_models_loaded(registry):
            return

        if st.button("Analyze Image", type="primary", use_container_width=True):
            status = st.empty()

            def show_state(state: PipelineState) -> None:
                message = STATUS_MESSAGES.get(state)
                if message:
                    status.info(message)

            try:
                scan = InferencePipeline(registry).run(
                    uploaded_file.getvalue(), patient, on_state_change=show_state
                )
            except InvalidImageError as e:
                status.empty()
                st.error(f"Invalid image: {e}")
                return
            except SkinScanError as e:
                status.empty()
                logger.error(f"Analysis failed: {e}", exc_info=True)
                st.error("Failed to analyze image. Please try again.")
                return
            status.empty()

            if not scan.is_valid_skin_image:
                st.session_state.pop('scan', None)
                st.error(
                    "This does not appear to be a skin image. "
                    "Please upload a valid dermatoscopic image."
                )
                return

            st.session_state.scan = scan
            if owner:
                db.save_scan(scan, owner)
                st.success("Analysis complete & saved to your history!")
            else:
                st.success("Analysis complete! Enter a username to save your history.")

        scan: Optional[ScanResult] = st.session_state.get('scan')
        if scan is not None:
            st.markdown("---")
            display_scan_result(scan)


def render_history_tab(db: ScanDatabase, owner: str):
    st.header("Scan History")
    if not owner:
        st.info("Enter a username in the sidebar to see saved scans.")
        return

    scans = db.list_scans(owner)
    if not scans:
        st.info("No scans saved yet.")
        return

    col_a, col_b, col_c = st.columns(3)
    with col_a:
        st.download_button(
            "Download History PDF",
            data=generate_batch_pdf_report(scans),
            file_name="Scan_History.pdf",
            mime="application/pdf",
        )
    with col_b:
        if st.button("Export CSV"):
            path = db.export_to_csv(owner)
            st.success(f"Exported to {path}")
    with col_c:
        if st.button("Clear History", type="secondary"):
            count = db.delete_all_scans(owner)
            st.session_state.pop('scan', None)
            st.success(f"Deleted {count} scans")
            st.rerun()

    for scan in scans:
        top = scan.top_prediction
        title = (
            f"{format_date(scan.timestamp)} - {scan.patient.first_name or 'Unnamed'} - "
            f"{top.lesion_class.name} ({format_probability(top.probability)})"
        )
        with st.expander(title):
            st.write(f"**Patient ID:** {scan.patient.patient_id}")
            st.write(f"**Severity:** {top.lesion_class.severity.upper()}")
            if st.button("Delete", key=f"delete_{scan.id}"):
                db.delete_scan(scan.id, owner)
                st.rerun()


def render_catalog_tab():
    st.header("Lesion Information")
    for lesion in LESION_CLASSES.values():
        with st.expander(f"{lesion.name} ({lesion.code.upper()})"):
            st.markdown(f"""
            **Description:** {lesion.description}

            **Causes:** {lesion.causes}

            **Risk Factors:** {lesion.risk_factors}

            **Symptoms:** {lesion.symptoms}

            **Severity:** <span style="color: {lesion.color};">{lesion.severity.upper()}</span>
            """, unsafe_allow_html=True)


def main():
    """Main application entry point."""
    init_page_config()
    load_custom_css()

    registry = get_registry()
    db = get_database()

    st.title("Skin Lesion Analyzer")
    st.caption("Upload an image of a skin lesion for AI-powered analysis and classification")

    patient = render_sidebar(registry)
    owner = patient.username
    st.session_state.owner = owner

    tab1, tab2, tab3 = st.tabs(["Analyze", "History", "Lesion Information"])
    with tab1:
        render_analysis_tab(registry, db, patient, owner)
    with tab2:
        render_history_tab(db, owner)
    with tab3:
        render_catalog_tab()


if __name__ == "__main__":
    main()
