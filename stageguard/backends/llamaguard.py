"""Llama Guard 3 classifier adapter."""

from __future__ import annotations

import re
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field

from ..models import Evaluation, Stage
from ..protocols import EvaluationRequest
from .common import require_config
from .inference import ClassifierEvaluator, LocalInferenceConfig

DEFAULT_MODEL = "llama-guard3:8b"
DEFAULT_MAX_TOKENS = 100


class LlamaGuardCategory(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""


DEFAULT_CATEGORIES: tuple[LlamaGuardCategory, ...] = (
    LlamaGuardCategory(
        id="S1",
        name="Violent Crimes",
        description=(
            "AI models should not create content that enables, encourages, or excuses the commission of violent "
            "crimes. Examples of violent crimes include, but are not limited to: unlawful violence toward people "
            "(e.g., terrorism, genocide, murder, hate crimes, child abuse, assault, battery, kidnapping), unlawful "
            "violence toward animals (e.g., animal abuse)."
        ),
    ),
    LlamaGuardCategory(
        id="S2",
        name="Non-Violent Crimes",
        description=(
            "AI models should not create content that enables, encourages, or excuses the commission of non-violent "
            "crimes. Examples of non-violent crimes include, but are not limited to: financial crimes (e.g., fraud, "
            "scams, money laundering), property crimes (e.g., burglary, robbery, arson, vandalism), drug crimes "
            "(e.g., trafficking controlled substances), weapons crimes (e.g., unlawful sale/transfer of firearms), "
            "cyber crimes (e.g., hacking, spyware, phishing)."
        ),
    ),
    LlamaGuardCategory(
        id="S3",
        name="Sex Crimes",
        description=(
            "AI models should not create content that enables, encourages, or excuses the commission of sex crimes. "
            "Examples of sex crimes include, but are not limited to: human trafficking, sexual assault (e.g., rape), "
            "sexual harassment (e.g., groping), lewd conduct."
        ),
    ),
    LlamaGuardCategory(
        id="S4",
        name="Child Exploitation",
        description=(
            "AI models should not create content that depicts child sexual abuse or exploits children in any way. "
            "This includes, but is not limited to: child sexual abuse material (CSAM), any content that sexualizes "
            "children, content that enables or encourages child abuse."
        ),
    ),
    LlamaGuardCategory(
        id="S5",
        name="Defamation",
        description=(
            "AI models should not create content that is defamatory about a real, living person. Defamation is "
            "defined as a false statement of fact that damages the reputation of the person."
        ),
    ),
    LlamaGuardCategory(
        id="S6",
        name="Specialized Advice",
        description=(
            "AI models should not create content that contains specialized financial, medical, or legal advice. "
            "This does not include general educational content on these topics."
        ),
    ),
    LlamaGuardCategory(
        id="S7",
        name="Privacy",
        description=(
            "AI models should not create content that contains sensitive, personal information about private "
            "individuals that could lead to harm, such as full names paired with phone numbers, SSN, address, "
            "email, bank account, driver's license, or passwords."
        ),
    ),
    LlamaGuardCategory(
        id="S8",
        name="Intellectual Property",
        description=(
            "AI models should not create content that violates the intellectual property rights of third parties, "
            "such as reproducing copyrighted material verbatim, or creating content that infringes on trademarks "
            "or patents."
        ),
    ),
    LlamaGuardCategory(
        id="S9",
        name="Indiscriminate Weapons",
        description=(
            "AI models should not create content that enables the creation of weapons of mass destruction. "
            "Examples include, but are not limited to: chemical weapons (e.g., nerve agents), biological weapons "
            "(e.g., anthrax), radiological weapons (e.g., dirty bombs), nuclear weapons (e.g., nuclear fission)."
        ),
    ),
    LlamaGuardCategory(
        id="S10",
        name="Hate",
        description=(
            "AI models should not create content that is hateful toward people on the basis of their protected "
            "characteristics. Protected characteristics include race, color, ethnicity, national origin, "
            "disability, religious affiliation, caste, sexual orientation, sex, gender identity, and serious "
            "disease. Severe disparagement and dehumanization are examples of hate speech."
        ),
    ),
    LlamaGuardCategory(
        id="S11",
        name="Self-Harm",
        description=(
            "AI models should not create content that enables, encourages, or excuses acts of intentional "
            "self-harm. Examples include, but are not limited to: suicide, self-injury (e.g., cutting), "
            "disordered eating."
        ),
    ),
    LlamaGuardCategory(
        id="S12",
        name="Sexual Content",
        description=(
            "AI models should not create depictions of nude adults or content that contains erotic descriptions "
            "or explicit depictions of sex acts."
        ),
    ),
    LlamaGuardCategory(
        id="S13",
        name="Elections",
        description=(
            "AI models should not create content that contains factually incorrect information about electoral "
            "systems and processes, including the timing, location, or eligibility requirements for voting. It "
            "also includes content that could be used to materially discourage voting."
        ),
    ),
    LlamaGuardCategory(
        id="S14",
        name="Code Interpreter Abuse",
        description=(
            "AI models should not create content that attempts to abuse code interpreters. Examples include, but "
            "are not limited to: writing malicious code for system exploitation, shell injection, or data "
            "exfiltration."
        ),
    ),
)


class LlamaGuardConfig(LocalInferenceConfig):
    model: str = DEFAULT_MODEL
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, ge=1)
    categories: tuple[LlamaGuardCategory, ...] = DEFAULT_CATEGORIES


@dataclass(slots=True, frozen=True)
class LlamaGuardVerdict:
    safe: bool
    violated_categories: tuple[str, ...] = ()


def conversation_role(stage: Stage) -> str:
    return "User" if stage is Stage.BEFORE_REQUEST else "Agent"


def build_prompt(
    content: str,
    categories: tuple[LlamaGuardCategory, ...],
    role: str,
    history_context: str | None = None,
) -> str:
    """Llama Guard 3 prompt in the model card's format."""

    categories_block = "\n".join(
        f"{category.id}: {category.name}.\n{category.description}" for category in categories
    )
    conversation = f"{history_context}\n{role}: {content}" if history_context else f"{role}: {content}"
    return (
        "<|begin_of_text|><|start_header_id|>user<|end_header_id|>\n\n"
        f"Task: Check if there is unsafe content in '{role}' messages in conversations according to our safety "
        "policy with the below categories.\n\n"
        "<BEGIN UNSAFE CONTENT CATEGORIES>\n"
        f"{categories_block}\n"
        "<END UNSAFE CONTENT CATEGORIES>\n\n"
        "<BEGIN CONVERSATION>\n"
        f"{conversation}\n"
        "<END CONVERSATION>\n\n"
        f"Provide your safety assessment for {role} in the above conversation:\n"
        "- First line must read 'safe' or 'unsafe'.\n"
        "- If unsafe, a second line must include a comma-separated list of violated categories."
        "<|eot_id|><|start_header_id|>assistant<|end_header_id|>"
    )


def parse_response(response: str) -> LlamaGuardVerdict:
    """Parse ``safe`` or ``unsafe\\nS1, S3``.

    Unrecognised output is unsafe whenever it mentions ``unsafe`` and safe
    otherwise.
    """

    lines = response.strip().split("\n")
    first = lines[0].strip().lower() if lines else ""
    if first == "safe":
        return LlamaGuardVerdict(safe=True)
    if first == "unsafe":
        second = lines[1].strip() if len(lines) > 1 else ""
        categories = tuple(item.strip() for item in second.split(",") if item.strip())
        return LlamaGuardVerdict(safe=False, violated_categories=categories)
    if "unsafe" in response.lower():
        return LlamaGuardVerdict(safe=False, violated_categories=tuple(re.findall(r"S\d+", response)))
    return LlamaGuardVerdict(safe=True)


class LlamaGuardEvaluator(ClassifierEvaluator):
    name = "llamaguard"
    config_type = LlamaGuardConfig
    scratch_prefix = "llamaguard"

    async def evaluate(self, request: EvaluationRequest) -> Evaluation | None:
        config = require_config(request.config, LlamaGuardConfig)
        prompt = build_prompt(
            request.content,
            config.categories,
            conversation_role(request.stage),
            request.history_context or None,
        )
        verdict = parse_response(await self.classify(prompt, config))
        if verdict.safe:
            return Evaluation(safe=True)
        names = {category.id: category.name for category in config.categories}
        labelled = [f"{cid} ({names[cid]})" if cid in names else cid for cid in verdict.violated_categories]
        return Evaluation(
            safe=False,
            reason=", ".join(labelled) or "unsafe",
            details={"categories": list(verdict.violated_categories), "category_labels": labelled},
        )

    def format_violation(self, evaluation: Evaluation, location: str) -> str:
        parts = [
            f"Sorry, I can't help with that. The {location} was flagged as potentially unsafe "
            "by the Llama Guard safety system."
        ]
        labels = (evaluation.details or {}).get("category_labels")
        if labels:
            parts.append(f"Violated categories: {', '.join(labels)}.")
        return " ".join(parts)


__all__ = [
    "DEFAULT_CATEGORIES",
    "LlamaGuardCategory",
    "LlamaGuardConfig",
    "LlamaGuardEvaluator",
    "LlamaGuardVerdict",
    "build_prompt",
    "conversation_role",
    "parse_response",
]
