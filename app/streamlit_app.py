"""
Patterson Heavy-Atom Search - Streamlit Application

Interactive front end for the heavy-atom search: load a request file,
choose map resolution and tolerance, run the search and inspect peaks,
partial Harker solutions and consolidated sites.

Author: Patterson Heavy-Atom Search Project
"""

import streamlit as st
import json
import numpy as np

from patterson.analysis.heavy_atom_search import (
    HeavyAtomSearch,
    SearchSettings,
    configure_logging,
    load_space_group_table,
)
from patterson.crystal.data import CrystalData
from visualization import create_section_heatmap

configure_logging()

# Page configuration
st.set_page_config(
    page_title="Patterson Heavy-Atom Search",
    page_icon="💎",
    layout="wide",
    initial_sidebar_state="expanded"
)

if 'last_result' not in st.session_state:
    st.session_state.last_result = None


# =============================================================================
# Helper Functions
# =============================================================================

@st.cache_data
def get_space_groups():
    """Load the bundled Harker-section table."""
    try:
        return load_space_group_table()
    except FileNotFoundError:
        return {}


def read_request(uploaded) -> dict:
    """Parse an uploaded request JSON file."""
    return json.loads(uploaded.getvalue().decode('utf-8'))


# =============================================================================
# Main Page
# =============================================================================

def main():
    """Main application entry point."""
    st.title("💎 Patterson Heavy-Atom Search")
    st.markdown(
        "Calculates the Patterson map from reflection intensities, finds its peaks "
        "and solves heavy-atom positions from the Harker sections of the space group."
    )

    st.sidebar.header("Input")
    uploaded = st.sidebar.file_uploader("Request file (JSON)", type=['json'])

    st.sidebar.header("Search Parameters")
    res = st.sidebar.slider("Map resolution", 8, 64, 32, 2,
                            help="Grid points per axis")
    tolerance = st.sidebar.number_input("Harker tolerance", 0.005, 0.25, 0.05, 0.005,
                                        format="%.3f")

    if uploaded is None:
        st.info("Upload a request file with crystalData to start.")
        return

    if st.sidebar.button("🔍 Run Search", type="primary"):
        status = st.empty()
        try:
            request = read_request(uploaded)
            space_groups = request.get('spaceGroups') or get_space_groups()
            settings = SearchSettings(map_resolution=res, harker_tolerance=tolerance)
            search = HeavyAtomSearch(space_groups, settings, progress=status.text)
            result = search.run(CrystalData.from_dict(request.get('crystalData')))
            st.session_state.last_result = result
            status.text(result.final_message)
        except Exception as e:
            st.error(f"Search failed: {str(e)}")
            return

    result = st.session_state.last_result
    if result is None:
        return

    col1, col2, col3 = st.columns(3)
    col1.metric("Peaks", len(result.peaks))
    col2.metric("Partial Sites", len(result.partial_sites))
    col3.metric("Consolidated Sites", len(result.consolidated_sites))
    st.success(result.final_message)

    tables = result.to_dataframes()

    st.subheader("Consolidated Sites")
    st.dataframe(tables['consolidated_sites'].style.format(
        {'x': "{:.3f}", 'y': "{:.3f}", 'z': "{:.3f}"}))

    with st.expander("Partial Harker Sites"):
        st.dataframe(tables['partial_sites'])

    with st.expander("Peaks"):
        st.dataframe(tables['peaks'].style.format("{:.3f}"))
        st.download_button(
            "📥 Download Peaks (CSV)",
            data=tables['peaks'].to_csv(index=False),
            file_name="patterson_peaks.csv",
            mime="text/csv"
        )

    st.subheader("Patterson Section")
    field = result.patterson_map
    n = field.shape[0]
    axis = st.selectbox("Fixed axis", ['w', 'v', 'u'])
    index = st.slider("Section index", 0, n - 1, n // 2)
    fig = create_section_heatmap(np.asarray(field), axis, index, result.peaks)
    st.plotly_chart(fig, use_container_width=True)


if __name__ == "__main__":
    main()
