"""Prompt builders: persona context, per-step reasoning prompts, fix requests."""

from __future__ import annotations

from persona_lab.browser.session import PageElement, PageState
from persona_lab.schemas import Finding, Persona

LOW_TRAIT = 0.35
HIGH_TRAIT = 0.65

_TRAIT_PROSE: dict[str, dict[str, str]] = {
    "patience": {
        "low": "Very impatient: quickly frustrated by slow or confusing interfaces, likely to abandon if things don't work immediately",
        "mid": "Moderately patient: willing to try a few times but will give up if stuck too long",
        "high": "Very patient: pushes through confusion and keeps trying even when the interface is unclear",
    },
    "exploration": {
        "low": "Not exploratory: sticks to the most obvious path, avoids clicking on unfamiliar elements",
        "mid": "Somewhat exploratory: will occasionally click around but prefers clear navigation",
        "high": "Highly exploratory: loves clicking around, discovering features, and trying new things",
    },
    "frustration_sensitivity": {
        "low": "Low frustration sensitivity: stays calm when confused or blocked, takes obstacles in stride",
        "mid": "Moderate frustration sensitivity: gets mildly annoyed at friction but can push through",
        "high": "Very sensitive to frustration: gets noticeably upset when confused or blocked",
    },
    "forgiveness": {
        "low": "Unforgiving of bad UX: blames the interface rather than themselves when things go wrong",
        "mid": "Somewhat forgiving: may try once more before blaming the interface",
        "high": "Very forgiving: assumes they made a mistake and gives the interface the benefit of the doubt",
    },
    "help_seeking": {
        "low": "Avoids seeking help: prefers to struggle alone rather than looking for support options",
        "mid": "Sometimes seeks help: will look for support if stuck for a while",
        "high": "Actively seeks help: looks for support, FAQ, or chat options when stuck",
    },
}

_ACTIONS_LINE = (
    "one of: CLICK_PRIMARY_CTA, CLICK_SECONDARY_CTA, OPEN_NAV, SCROLL, BACK, SEEK_INFO, HESITATE, ABANDON"
)


def describe_trait_level(value: float) -> str:
    if value < LOW_TRAIT:
        return "low"
    if value > HIGH_TRAIT:
        return "high"
    return "mid"


def trait_to_prose(trait: str, value: float) -> str:
    """Describe one trait value in plain language."""
    levels = _TRAIT_PROSE.get(trait)
    if levels is None:
        return f"{trait}: {value:.2f}"
    return levels[describe_trait_level(value)]


def _scoring_hints(persona: Persona) -> list[str]:
    t = persona.traits
    hints: list[str] = []
    if t.patience < LOW_TRAIT:
        hints.append("Your low patience means ANY extra step, loading time, or unclear path = friction 0.4+")
    if t.patience > HIGH_TRAIT:
        hints.append(
            "Your high patience means you tolerate friction better, but still notice and report "
            "issues (score 0.2+ for real confusions)"
        )
    if t.frustration_sensitivity > HIGH_TRAIT:
        hints.append(
            "Your high frustration sensitivity means confusing labels, too many choices, or dead ends = friction 0.5+"
        )
    if t.exploration < LOW_TRAIT:
        hints.append(
            "Your low exploration tendency means unfamiliar layouts, hidden menus, or non-obvious "
            "navigation = friction 0.4+"
        )
    if t.forgiveness < LOW_TRAIT:
        hints.append(
            "Your low forgiveness means any UX mistake or confusing flow = high friction, "
            "you blame the site not yourself"
        )
    return hints


def build_persona_context(persona: Persona) -> str:
    """Second-person description of who the model is playing."""
    lines = [f'You are "{persona.name}".', ""]

    demographics: list[str] = []
    if persona.gender:
        demographics.append(persona.gender)
    if persona.age_group:
        demographics.append(f"in the {persona.age_group} age range")
    if demographics:
        lines += [f"You are a {' '.join(demographics)} user.", ""]

    lines.append("Your behavioral profile:")
    traits = persona.traits.model_dump()
    for name in _TRAIT_PROSE:
        lines.append(f"- {trait_to_prose(name, traits[name])}")

    if persona.accessibility_needs:
        lines += ["", f"Your accessibility needs: {', '.join(persona.accessibility_needs)}"]

    for key, value in sorted(persona.knobs.items()):
        lines.append(f"- {key}: {value}")

    hints = _scoring_hints(persona)
    if hints:
        lines += ["", "How your traits affect friction scoring:"]
        lines += [f"- {hint}" for hint in hints]
    return "\n".join(lines)


def _memory_section(memory: str) -> str:
    return f"\n## Your Memory from Previous Steps\n{memory}\n" if memory else ""


def build_screenshot_prompt(
    persona_context: str,
    flow_name: str,
    *,
    memory: str,
    step_index: int,
    total_frames: int,
    frame_index: int,
    same_screen_count: int,
    scroll_count: int = 0,
) -> str:
    """Prompt for one static frame of a screenshot-mode flow.

    *scroll_count* is how many times the persona already chose SCROLL on this
    frame; any prior scroll adds a warning that scrolling shows nothing new.
    """
    hints = ""
    if scroll_count >= 1:
        hints += (
            f"\nWARNING: You have already scrolled {scroll_count} time(s) on this screen. "
            "These screenshots are static full-page captures, so scrolling will NOT reveal any new "
            "content. You MUST choose a different action: click a CTA to advance, or ABANDON if you "
            "cannot proceed.\n"
        )
    if same_screen_count >= 2:
        hints += (
            f"\nNOTE: You have already spent {same_screen_count} actions on this same screen without "
            "advancing. If you cannot find what you need, consider clicking a CTA to advance or abandoning.\n"
        )
    return f"""{persona_context}

## Goal
You are trying to complete this UX flow: "{flow_name}"
This flow has {total_frames} screens. You are currently on screen {frame_index + 1} of {total_frames}, step {step_index + 1} overall.

The attached screenshot shows the current screen. Analyze it and decide what to do next.

Each screenshot is a complete, static capture of the page. Choosing SCROLL will NOT reveal more content; you will see the same image again. If you have already viewed this screen, choose a forward action or ABANDON.
{_memory_section(memory)}{hints}
## Instructions
You ARE this persona. Describe confusions and observations in the first person.

Analyze this screen critically from your behavioral profile. Identify friction points: unclear labels, too many options, missing information, visual clutter, unclear next step, small text, unfamiliar terminology. A friction score of 0.0 should be extremely rare.

Respond as JSON:
{{
  "salient": "what stands out most to me on this screen",
  "confusions": [
    {{ "issue": "I couldn't tell which button takes me to checkout", "evidence": "what on screen caused it", "elementRef": "optional element label" }}
  ],
  "likelyAction": "{_ACTIONS_LINE}",
  "confidence": 0.0 to 1.0,
  "friction": 0.0 to 1.0,
  "dropoffRisk": 0.0 to 1.0,
  "memoryUpdate": "optional note to carry forward to the next step"
}}"""


def format_element(element: PageElement) -> str:
    if element.role:
        label = f'{element.tag}[role="{element.role}"]'
    elif element.tag == "input" and element.type:
        label = f"Input[{element.type}]"
    else:
        label = element.tag.capitalize()
    parts = [f"[{element.index}]", label]
    if element.text:
        parts.append(f'"{element.text}"')
    elif element.placeholder:
        parts.append(f'placeholder="{element.placeholder}"')
    if element.href and element.href != "#":
        href = element.href if len(element.href) <= 50 else element.href[:47] + "..."
        parts.append(f"-> {href}")
    parts.append(f"({element.x}, {element.y}, {element.width}x{element.height})")
    if not element.in_viewport:
        parts.append("[scroll to reach]")
    return " ".join(parts)


def format_elements(elements: list[PageElement]) -> str:
    if not elements:
        return "(no interactive elements found)"
    return "\n".join(format_element(el) for el in elements)


def _scroll_context(page: PageState) -> str:
    bottom = page.scroll_y + page.viewport_height
    pct = round(bottom / page.page_height * 100) if page.page_height else 100
    text = (
        f"Viewport: {page.viewport_height}px tall. Page total: {page.page_height}px. "
        f"Currently viewing: {page.scroll_y}px - {bottom}px ({pct}% of page)."
    )
    if page.at_bottom:
        text += "\nYou are at the bottom of the page; no more content below."
    else:
        text += (
            f"\n{page.page_height - bottom}px of content below the fold. "
            "Scroll down before concluding something is missing."
        )
    return text


def build_agent_prompt(
    persona_context: str,
    goal: str,
    page: PageState,
    *,
    memory: str,
    step_index: int,
    max_steps: int,
    same_screen_count: int,
) -> str:
    """Prompt for one live-page step of an agent-mode episode."""
    stuck = ""
    if same_screen_count >= 2:
        stuck = (
            f"\nWARNING: You have been on the same URL for {same_screen_count} consecutive actions. "
            "Try a different approach, navigate elsewhere, or give up if you're stuck.\n"
        )
    return f"""{persona_context}

## Goal
You are trying to: "{goal}"
Step {step_index + 1} of max {max_steps}. Current URL: {page.url}
Page title: {page.title}

## Page Scroll Position
{_scroll_context(page)}

## Interactive Elements
{format_elements(page.elements)}

## Screenshot
[attached PNG of the current viewport]
{_memory_section(memory)}{stuck}
## Instructions
You ARE this persona. First person. Identify friction, then pick ONE concrete browser action:
- click: {{ "type": "click", "elementIndex": <number> }}
- click_coordinates: {{ "type": "click_coordinates", "x": <number>, "y": <number> }}
- type: {{ "type": "type", "elementIndex": <number>, "text": "<string>", "submit": true|false }}
- scroll: {{ "type": "scroll", "direction": "up" | "down", "amount": <fraction of page height, optional> }}
- navigate_back: {{ "type": "navigate_back" }}
- wait: {{ "type": "wait", "reason": "<string>" }}
- done: goal reached or giving up. {{ "type": "done", "success": true|false, "reason": "<string>" }}

Do not choose "done" with success=false while there is unseen content below the viewport.

Also give an abstract "intent", {_ACTIONS_LINE}.

Respond as JSON:
{{
  "salient": "what stands out most to me on this screen",
  "confusions": [
    {{ "issue": "I couldn't tell which button...", "evidence": "what on screen caused it", "elementRef": "optional element label" }}
  ],
  "browserAction": {{ "type": "click", "elementIndex": 0 }},
  "intent": "CLICK_PRIMARY_CTA",
  "confidence": 0.0 to 1.0,
  "friction": 0.0 to 1.0,
  "dropoffRisk": 0.0 to 1.0,
  "completesGoal": true|false,
  "memoryUpdate": "optional note to carry forward to the next step"
}}"""


def build_fix_prompt(finding: Finding) -> str:
    """Ask for a short, actionable design fix for one finding."""
    personas = len(finding.affected_personas)
    location = f" on screen {finding.screen_index + 1}" if finding.screen_index is not None else ""
    element = f"\nElement: {finding.element_ref}" if finding.element_ref else ""
    return (
        "You are a UX/UI design consultant. A usability study with synthetic users surfaced this issue"
        f"{location}:\n\n"
        f"Issue: {finding.issue}\n"
        f"Evidence: {finding.evidence}{element}\n"
        f"Severity: {finding.severity:.2f} (0-1). Reported {finding.frequency} time(s) by {personas} persona(s).\n\n"
        "Recommend a specific, actionable fix in 2-4 sentences. Focus on what to change in the interface. "
        "Respond with plain text only."
    )
