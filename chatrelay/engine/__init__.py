# Server-side core for relaying chat turns to a local inference backend
#
# Key components:
#   - chat_types.py   Conversation, config, and protocol frame types
#   - protocol.py     JSON wire encoding for frames and the history document
#   - config.py       Model mapping loader
#   - history.py      Persisted history store
#   - process.py      Inference backend process manager
#   - streaming.py    Streaming chat-completion adapter
#   - state.py        Process-wide state shared by sessions
