"""All magic numbers and configuration constants."""

COUNTDOWN_SECONDS = 3                # ticks between the cue and the first line
TICK_SECONDS = 1.0                   # seconds per countdown tick
CUE_WORD = "action"                  # spoken cue that starts the countdown

STT_SAMPLE_RATE = 16000              # Hz, mic capture and stream audio rate
STT_AUDIO_FORMAT = "pcm_16000"       # stream audio encoding name
STT_COMMIT_STRATEGY = "vad"          # voice-activity commit of transcript segments
STT_BLOCK_SIZE = 4096                # frames per captured audio block
STT_WS_URL = "wss://api.elevenlabs.io/v1/scribe"
STT_TOKEN_URL = "https://api.elevenlabs.io/v1/single-use-token/realtime_scribe"
STT_TOKEN_TIMEOUT = 10.0             # seconds, credential request timeout
STT_CLOSE_TIMEOUT = 2.0              # seconds, websocket close handshake limit

AGC_TARGET_RMS = 3000.0              # int16 RMS the gain control aims for
AGC_MAX_GAIN = 8.0                   # never amplify a block more than this
NOISE_GATE_RMS = 120.0               # blocks quieter than this are zeroed

TTS_RETRY_COUNT = 3                  # max retries per synthesized line
TTS_RETRY_BASE_DELAY = 1.0           # seconds, base delay for exponential backoff
TTS_RATE = "-5%"                     # partner speech rate, slightly slower than default
TTS_TARGET_DBFS = -20.0              # playback level for synthesized lines
DEFAULT_VOICE = "en-GB-RyanNeural"   # voice when no selector is given

GOOD_SCORE = 80                      # accuracy at or above reads as "good"
FAIR_SCORE = 60                      # accuracy at or above reads as "fair"
FEEDBACK_MISSED_SHOWN = 3            # missed words listed in line feedback

API_KEY_ENV = "ELEVENLABS_API_KEY"
STT_URL_ENV = "SCENE_PARTNER_STT_URL"
TOKEN_URL_ENV = "SCENE_PARTNER_TOKEN_URL"
VERSION = "0.1.0"
