"""
app.py - Streamlit Entrypoint for Green Sentinel

Keep something green in front of the camera. Take it away and the alarm
rings until you press STOP.
"""

import logging

import streamlit as st
from dotenv import load_dotenv
from streamlit_webrtc import WebRtcMode, webrtc_streamer

from alarm_state import AlarmState
from audio_manager import AudioFrameGenerator
from config import load_settings, log_level
from video_processor import SentinelAudioProcessor, SentinelVideoProcessor

load_dotenv()
logging.basicConfig(level=log_level())


# =============================================================================
# PAGE CONFIG
# =============================================================================

st.set_page_config(
    page_title="Green Sentinel",
    page_icon="🟢",
    layout="centered",
)

settings = load_settings()

# One audio output per browser session, shared by both processors
if "audio_output" not in st.session_state:
    st.session_state.audio_output = AudioFrameGenerator(settings.audio_sample_rate)
audio_output = st.session_state.audio_output


# =============================================================================
# MAIN UI
# =============================================================================

st.markdown("""
# 🟢 Green Sentinel
*Keep the green marker in view. If it disappears, the alarm goes off.*
""")

ctx = webrtc_streamer(
    key="green-sentinel",
    mode=WebRtcMode.SENDRECV,
    video_processor_factory=lambda: SentinelVideoProcessor(audio_output, settings),
    audio_processor_factory=lambda: SentinelAudioProcessor(audio_output),
    media_stream_constraints={
        "video": {
            "width": {"ideal": 640},
            "height": {"ideal": 480},
            "frameRate": {"ideal": 15}
        },
        # Needed so the browser opens an audio track we can play the alarm on
        "audio": True
    },
    async_processing=True,
    rtc_configuration={
        "iceServers": [{"urls": ["stun:stun.l.google.com:19302"]}]
    }
)


@st.fragment(run_every=0.5)
def alarm_controls():
    processor = ctx.video_processor
    if processor is None:
        if not ctx.state.playing:
            st.info("Press START and allow camera access to begin monitoring.")
        return

    processor.source.set_playing(ctx.state.playing)

    if processor.last_error is not None:
        st.error(f"Monitoring stopped: {processor.last_error}")
        return

    if processor.surface.stop_control_visible:
        st.error("🚨 GREEN MARKER LOST 🚨")
        if st.button("🛑 STOP", type="primary", use_container_width=True):
            processor.stop_alarm()
    elif processor.state is AlarmState.MONITORING:
        st.success("Monitoring: green marker in view")


alarm_controls()
