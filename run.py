import os

# faster-whisper pulls models through huggingface_hub; its tqdm bars break in worker threads
os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")

from app.main import create_app

app = create_app()
