import os
from typing import Optional

import anthropic

from voice_tutor.errors import RenderError
from voice_tutor.workspace import WorkspaceSnapshot

_PLACEHOLDER_KEYS = {"CHANGE_ME", "REPLACE_ME", "YOUR_API_KEY"}


def _read_api_key() -> str:
    api_key = (os.getenv("ANTHROPIC_API_KEY") or "").strip()
    if not api_key or api_key.upper().startswith("YOUR_") or api_key.upper() in _PLACEHOLDER_KEYS:
        raise RuntimeError(
            "ANTHROPIC_API_KEY is missing or looks like a placeholder. "
            "Set a real key in the project .env and restart the backend."
        )
    return api_key


class LLMClient:
    """Single-shot vision call used by the whiteboard render pipeline."""

    def __init__(self, client: Optional[anthropic.AsyncAnthropic] = None):
        self.client = client or anthropic.AsyncAnthropic(api_key=_read_api_key())
        self.model = os.getenv("RENDER_MODEL", "claude-sonnet-4-5").strip()
        self.max_tokens = int(os.getenv("RENDER_MAX_TOKENS", "1024"))

    async def complete(
        self,
        system: str,
        prompt: str,
        snapshot: Optional[WorkspaceSnapshot] = None,
    ) -> str:
        """
        Send the prompt (with the whiteboard image attached when there is one)
        and return the concatenated text of the reply.

        Any failure of the call surfaces as RenderError; nothing is retried.
        """
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system,
                messages=[{"role": "user", "content": self._build_content(prompt, snapshot)}],
            )
        except anthropic.APIError as exc:
            raise RenderError(f"generation call failed: {exc}") from exc
        except Exception as exc:
            raise RenderError(f"generation call failed: {exc!r}") from exc

        return "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )

    # ── Private helpers ──────────────────────────────────────────────────────

    def _build_content(self, prompt: str, snapshot: Optional[WorkspaceSnapshot]) -> list[dict]:
        content: list[dict] = []
        if snapshot is not None and snapshot.data:
            content.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": snapshot.media_type,
                        "data": snapshot.data,
                    },
                }
            )
        content.append({"type": "text", "text": prompt})
        return content
