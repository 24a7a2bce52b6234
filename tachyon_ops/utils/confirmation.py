"""Confirmation gate for irreversible operations.

Decides whether an operator must type a confirmation keyword before a
migration (or any other irreversible command) runs against a target.
The decision itself is pure; the only side effect is a single call to an
injected prompt function, so tests substitute a fake input source.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

PromptFn = Callable[[str], str]


class ConfirmationDecision(str, Enum):
    """Outcome of a confirmation check."""

    PROCEED = "proceed"
    ABORT = "abort"


class ConfirmationDeclinedError(Exception):
    """Raised when the operator does not confirm an irreversible operation."""

    def __init__(self, environment: str, keyword: str):
        self.environment = environment
        self.keyword = keyword
        super().__init__(
            f"Confirmation declined for environment '{environment}' "
            f"(expected keyword '{keyword}')"
        )


@dataclass(frozen=True)
class ConfirmationPolicy:
    """Confirmation requirements for a single environment."""

    requires_confirmation: bool = False
    confirmation_keyword: str = "yes"


class ConfirmationGate:
    """Single blocking interaction point before irreversible operations.

    Example:
        gate = ConfirmationGate(prompt=input)
        decision = gate.decide(policy, automated=False)
        if decision is ConfirmationDecision.ABORT:
            ...
    """

    def __init__(self, prompt: Optional[PromptFn] = None):
        """Initialize the gate.

        Args:
            prompt: Blocking function that shows a question and returns the
                operator's answer. Defaults to the Rich keyword prompt.
        """
        if prompt is None:
            from ..ui.prompt_helpers import prompt_keyword

            prompt = prompt_keyword
        self._prompt = prompt

    @staticmethod
    def needs_prompt(policy: ConfirmationPolicy, automated: bool) -> bool:
        """Check whether an interactive prompt is required."""
        return policy.requires_confirmation and not automated

    @staticmethod
    def matches(answer: Optional[str], keyword: str) -> bool:
        """Exact, case-sensitive match after trimming surrounding whitespace."""
        if answer is None:
            return False
        return answer.strip() == keyword

    def decide(self, policy: ConfirmationPolicy, automated: bool) -> ConfirmationDecision:
        """Resolve the gate for one invocation.

        Args:
            policy: Confirmation policy of the target environment
            automated: True when running unattended (CI or explicit auto-confirm)

        Returns:
            PROCEED or ABORT. The prompt is shown at most once.
        """
        if automated:
            logger.info("Automated mode: skipping interactive confirmation")
            return ConfirmationDecision.PROCEED

        if not policy.requires_confirmation:
            return ConfirmationDecision.PROCEED

        keyword = policy.confirmation_keyword
        question = f'Type "{keyword}" (exact match) to proceed'

        try:
            answer = self._prompt(question)
        except (EOFError, KeyboardInterrupt):
            logger.warning("Confirmation input closed before an answer was given")
            return ConfirmationDecision.ABORT

        if self.matches(answer, keyword):
            return ConfirmationDecision.PROCEED

        logger.warning("Confirmation keyword did not match; aborting")
        return ConfirmationDecision.ABORT

    def require(
        self,
        policy: ConfirmationPolicy,
        automated: bool,
        environment: str,
    ) -> None:
        """Like decide(), but raise instead of returning ABORT.

        Raises:
            ConfirmationDeclinedError: If the operator did not confirm
        """
        if self.decide(policy, automated) is ConfirmationDecision.ABORT:
            raise ConfirmationDeclinedError(environment, policy.confirmation_keyword)
