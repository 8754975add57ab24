"""Prometheus metrics shared by the bridge components."""

from prometheus_client import Counter, Gauge

ACTIVE_SESSIONS = Gauge(
    "agent_bridge_active_sessions",
    "Number of voice channels the bridge currently occupies",
)
LINK_READY = Gauge(
    "agent_bridge_link_ready",
    "1 when the agent link of a channel is READY",
    ["channel"],
)
CHUNKS_SENT = Counter(
    "agent_bridge_audio_chunks_sent_total",
    "Microphone chunks forwarded to the agent",
)
CHUNKS_DROPPED = Counter(
    "agent_bridge_audio_chunks_dropped_total",
    "Microphone chunks dropped because the agent link was not ready",
)
UTTERANCES_SENT = Counter(
    "agent_bridge_utterances_sent_total",
    "End-of-utterance signals sent to the agent",
)
UTTERANCES_PLAYED = Counter(
    "agent_bridge_utterances_played_total",
    "Reassembled agent utterances written to the playback pipeline",
)
RECONNECTS = Counter(
    "agent_bridge_link_reconnects_total",
    "Reconnect attempts scheduled after unintentional link loss",
)
IDLE_CLOSES = Counter(
    "agent_bridge_link_idle_closes_total",
    "Agent links closed because no traffic arrived before the idle deadline",
)
STAGE_FAULTS = Counter(
    "agent_bridge_pipeline_stage_faults_total",
    "Pipeline stage faults that forced a pipeline rebuild",
    ["pipeline"],
)
