"""
Guarded OpenAI client wrapper.

Drives the governor's start/end hooks around every chat completion and
refuses new calls while the circuit breaker is tripped.
"""

import uuid
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.governor import CostGovernor


class BreakerTrippedError(Exception):
    """Raised when a call is attempted while the circuit breaker is tripped."""


class GuardedOpenAI:
    """OpenAI client wrapper that reports usage to a cost governor.

    Provider errors are propagated unchanged; the pending entry for a failed
    call is discarded so it is not left behind as an abandoned request.
    """

    provider = "openai"

    def __init__(
        self,
        governor: CostGovernor,
        model: str,
        agent_id: Optional[str] = None,
        session_id: Optional[str] = None,
        client: Optional[OpenAI] = None,
    ):
        """Initialize guarded OpenAI client.

        Args:
            governor: Governor receiving the call hooks (required)
            model: OpenAI model name (required)
            agent_id: Agent identifier attributed to every call
            session_id: Session identifier attributed to every call
            client: Preconfigured OpenAI client (defaults to ``OpenAI()``)

        Raises:
            ValueError: If governor or model is missing/empty
        """
        if governor is None:
            raise ValueError("governor is required")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.governor = governor
        self.model = model
        self.agent_id = agent_id
        self.session_id = session_id
        self.client = client or OpenAI()

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        task_type: Optional[str] = None,
        **kwargs: Any
    ) -> Any:
        """Create chat completion with usage recording.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            task_type: Label recorded with the usage (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty
            BreakerTrippedError: If the circuit breaker is tripped
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        if not self.governor.admission_allowed():
            raise BreakerTrippedError("Circuit breaker is tripped. Reset to continue.")

        request_id = str(uuid.uuid4())
        metadata: Dict[str, Any] = {"message_count": len(messages)}
        if task_type:
            metadata["task_type"] = task_type

        self.governor.on_provider_call_start(
            request_id,
            self.provider,
            self.model,
            agent_id=self.agent_id,
            session_id=self.session_id,
            request_metadata=metadata,
        )

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except Exception:
            self.governor.correlator.discard(request_id)
            raise

        self.governor.on_provider_call_end(request_id, response)
        return response
