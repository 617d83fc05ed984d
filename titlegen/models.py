"""Local models: Whisper speech recognition and a causal chat model, both through transformers."""

import fnmatch
import logging
import os
import threading
from typing import Callable, List, Optional, Protocol, Sequence

import httpx
import numpy as np
import torch
from huggingface_hub import HfApi, hf_hub_download, snapshot_download
from huggingface_hub.errors import HfHubHTTPError, OfflineModeIsEnabled, RepositoryNotFoundError
from huggingface_hub.utils import tqdm as hf_tqdm
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    StoppingCriteria,
    StoppingCriteriaList,
    TextStreamer,
    pipeline,
)

from .config import Settings
from .protocol import DoneEvent, InitiateEvent, LoadingEvent, Message, ProgressEvent, WorkerEvent
from .transcriber import Transcript

logger = logging.getLogger(__name__)

EventCallback = Callable[[WorkerEvent], None]
TextCallback = Callable[[str, int], None]

# Files needed to run a checkpoint with PyTorch; weights in other formats are skipped
MODEL_FILE_PATTERNS = ["*.json", "*.txt", "*.model", "*.tiktoken", "*.safetensors"]
LEGACY_WEIGHT_PATTERNS = ["*.bin"]


class InferenceBackend(Protocol):
    """What the worker and the HTTP routes need from the models."""

    @property
    def loaded(self) -> bool: ...

    def check(self) -> str: ...

    def load(self, on_event: Optional[EventCallback] = None) -> None: ...

    def stream_chat(
        self,
        messages: Sequence[Message],
        *,
        max_new_tokens: int,
        on_text: TextCallback,
        should_stop: Callable[[], bool],
    ) -> None: ...

    def complete_chat(self, messages: Sequence[Message], *, max_new_tokens: int) -> str: ...

    def transcribe(self, samples: np.ndarray, sampling_rate: int) -> Transcript: ...


class _CallbackStreamer(TextStreamer):
    """Forwards decoded text to a callback together with the generated token count."""

    def __init__(self, tokenizer, on_text: TextCallback) -> None:
        super().__init__(tokenizer, skip_prompt=True, skip_special_tokens=True)
        self._on_text = on_text
        self.num_tokens = 0

    def put(self, value) -> None:
        if not (self.skip_prompt and self.next_tokens_are_prompt):
            self.num_tokens += int(value.numel())
        super().put(value)

    def on_finalized_text(self, text: str, stream_end: bool = False) -> None:
        if text:
            self._on_text(text, self.num_tokens)


class _StopFlag(StoppingCriteria):
    """Stops generation as soon as ``should_stop`` turns true."""

    def __init__(self, should_stop: Callable[[], bool]) -> None:
        self._should_stop = should_stop

    def __call__(self, input_ids: torch.LongTensor, scores: torch.FloatTensor, **kwargs) -> torch.BoolTensor:
        return torch.full(
            (input_ids.shape[0],), self._should_stop(), dtype=torch.bool, device=input_ids.device
        )


def _wanted_files(filenames: List[str]) -> List[str]:
    patterns = list(MODEL_FILE_PATTERNS)
    if not any(name.endswith(".safetensors") for name in filenames):
        patterns += LEGACY_WEIGHT_PATTERNS
    return [
        name
        for name in filenames
        if "/" not in name and any(fnmatch.fnmatch(name, p) for p in patterns)
    ]


def _progress_bar(emit: EventCallback, file_id: str, model_id: str, size: int):
    """A silent tqdm class that turns download updates into progress events."""

    class _ProgressBar(hf_tqdm):
        def __init__(self, *args, **kwargs) -> None:
            kwargs["disable"] = True
            super().__init__(*args, **kwargs)
            self._loaded = kwargs.get("initial") or 0
            self._size = size or kwargs.get("total") or 0

        def update(self, n=1):
            self._loaded += n or 0
            progress = round(100.0 * self._loaded / self._size, 1) if self._size else 0.0
            emit(ProgressEvent(
                file=file_id, name=model_id, loaded=self._loaded, total=self._size, progress=progress
            ))
            return super().update(n)

    return _ProgressBar


class TransformersBackend:
    """Owns the speech recognition pipeline and the chat model.

    Models are fetched and loaded on first use (or on an explicit ``load``),
    once per process.
    """

    def __init__(self, settings: Settings, api: Optional[HfApi] = None) -> None:
        self.settings = settings
        self._api = api or HfApi()
        self._lock = threading.Lock()
        self._device: Optional[str] = None
        self._asr = None
        self._tokenizer = None
        self._model = None

    @property
    def loaded(self) -> bool:
        return self._model is not None and self._asr is not None

    @property
    def device(self) -> str:
        if self._device is None:
            self._device = self.check()
        return self._device

    def check(self) -> str:
        """Pick the inference device; fail when a GPU is required but missing."""
        if self.settings.device:
            device = self.settings.device
        elif torch.cuda.is_available():
            device = "cuda"
        elif torch.backends.mps.is_available():
            device = "mps"
        else:
            device = "cpu"
        if self.settings.require_gpu and device == "cpu":
            raise RuntimeError("No GPU available on this machine")
        return device

    def load(self, on_event: Optional[EventCallback] = None) -> None:
        emit = on_event or (lambda event: None)
        with self._lock:
            if self.loaded:
                return
            local_dirs = {}
            for model_id in (self.settings.asr_model, self.settings.llm_model):
                emit(LoadingEvent(data=f"Loading model {model_id}..."))
                local_dirs[model_id] = self._fetch(model_id, emit)

            logger.info("Loading speech recognition model %s on %s", self.settings.asr_model, self.device)
            self._asr = pipeline(
                "automatic-speech-recognition",
                model=local_dirs[self.settings.asr_model],
                device=self.device,
            )
            logger.info("Loading chat model %s on %s", self.settings.llm_model, self.device)
            self._tokenizer = AutoTokenizer.from_pretrained(local_dirs[self.settings.llm_model])
            self._model = AutoModelForCausalLM.from_pretrained(
                local_dirs[self.settings.llm_model], dtype="auto"
            ).to(self.device)

    def _fetch(self, model_id: str, emit: EventCallback) -> str:
        """Download the checkpoint file by file and return its local directory.

        Byte progress is reported for each file. When the hub cannot be reached
        the files already in the local cache are used.
        """
        try:
            info = self._api.model_info(model_id, files_metadata=True)
        except RepositoryNotFoundError:
            raise
        except (OfflineModeIsEnabled, HfHubHTTPError, httpx.HTTPError, OSError) as e:
            logger.warning("Hub unreachable for %s (%s), using the local cache", model_id, e)
            emit(LoadingEvent(data=f"Using cached files for {model_id}"))
            return snapshot_download(model_id, local_files_only=True)

        sizes = {s.rfilename: (s.size or 0) for s in info.siblings or []}
        local_dir = None
        for filename in _wanted_files(list(sizes)):
            file_id = f"{model_id}/{filename}"
            total = sizes[filename]
            emit(InitiateEvent(file=file_id, name=model_id, loaded=0, total=total))
            path = hf_hub_download(
                model_id, filename, tqdm_class=_progress_bar(emit, file_id, model_id, total)
            )
            emit(ProgressEvent(file=file_id, name=model_id, loaded=total, total=total, progress=100.0))
            emit(DoneEvent(file=file_id, name=model_id))
            local_dir = os.path.dirname(path)
        if local_dir is None:
            raise RuntimeError(f"No usable model files found for {model_id}")
        return local_dir

    def _encode(self, messages: Sequence[Message]):
        prompt = self._tokenizer.apply_chat_template(
            [m.model_dump() for m in messages], tokenize=False, add_generation_prompt=True
        )
        return self._tokenizer(prompt, return_tensors="pt").to(self._model.device)

    def stream_chat(
        self,
        messages: Sequence[Message],
        *,
        max_new_tokens: int,
        on_text: TextCallback,
        should_stop: Callable[[], bool],
    ) -> None:
        self.load()
        inputs = self._encode(messages)
        self._model.generate(
            **inputs,
            max_new_tokens=max_new_tokens,
            do_sample=False,
            streamer=_CallbackStreamer(self._tokenizer, on_text),
            stopping_criteria=StoppingCriteriaList([_StopFlag(should_stop)]),
        )

    def complete_chat(self, messages: Sequence[Message], *, max_new_tokens: int) -> str:
        """Greedy generation; returns only the newly generated text."""
        self.load()
        inputs = self._encode(messages)
        output = self._model.generate(**inputs, max_new_tokens=max_new_tokens, do_sample=False)
        new_tokens = output[0, inputs["input_ids"].shape[1]:]
        return self._tokenizer.decode(new_tokens, skip_special_tokens=True)

    def transcribe(self, samples: np.ndarray, sampling_rate: int) -> Transcript:
        self.load()
        output = self._asr(
            {"raw": samples, "sampling_rate": sampling_rate},
            chunk_length_s=30,
            return_timestamps=True,
        )
        return Transcript.from_pipeline_output(output)
