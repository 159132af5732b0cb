# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""System prompt construction with tier-specific execution guidance."""

from typing import List, Optional

from taskpilot.agent.step_budget import StepBudgetConfig, TextContains, ToolCalled
from taskpilot.agent.types import TaskComplexity

BASE_PROMPT = """You are an autonomous assistant that completes tasks in a sequence of steps.
Each step you may call tools; their results are returned to you before the next step.

Core rules:
- Analyze before you modify: read the relevant files before changing them.
- Make the smallest change that fulfils the request.
- For large or destructive changes, describe the plan and ask for confirmation first.
- When the task is done, reply with a short summary and stop calling tools."""

TIER_GUIDELINES = {
    TaskComplexity.SIMPLE: """- Focus on direct, single-step solutions
- Minimize tool usage to essential operations only
- Provide immediate, clear results""",
    TaskComplexity.MODERATE: """- Break task into 2-4 logical phases
- Use analysis tools before making changes
- Validate your changes and fix any errors before proceeding""",
    TaskComplexity.COMPLEX: """- Plan your approach with 3-5 major phases
- Start with comprehensive analysis of existing code
- Make incremental changes and validate after each change
- Fix errors immediately instead of accumulating them
- Report your progress and reasoning at each step""",
    TaskComplexity.ADVANCED: """- Develop a detailed multi-phase execution plan
- Conduct thorough analysis and research first
- Implement changes in small, testable increments
- Validate after every file write or edit and re-validate after fixes
- Provide detailed progress updates and explanations
- Consider rollback strategies for major changes""",
}


class PromptBuilder:
    """Builds the system prompt for a run."""

    def __init__(self, base_prompt: str = BASE_PROMPT):
        self.base_prompt = base_prompt

    def guidelines(self, complexity: TaskComplexity) -> str:
        return TIER_GUIDELINES[complexity]

    def build(
        self,
        complexity: TaskComplexity,
        budget: StepBudgetConfig,
        landing_page_id: Optional[str] = None,
        model_reasoning: Optional[str] = None,
    ) -> str:
        sections: List[str] = [self.base_prompt]

        sections.append(
            f"Task complexity: {complexity.value.upper()} "
            f"(at most {budget.max_steps} steps).\n"
            f"Execution guidelines:\n{self.guidelines(complexity)}"
        )

        finishing = self._finishing_instructions(budget)
        if finishing:
            sections.append(finishing)

        if landing_page_id:
            sections.append(f"You are working on landing page {landing_page_id}.")
        if model_reasoning:
            sections.append(f"Model selection: {model_reasoning}")

        return "\n\n".join(sections)

    @staticmethod
    def _finishing_instructions(budget: StepBudgetConfig) -> str:
        lines = []
        for condition in budget.stop_conditions:
            if isinstance(condition, ToolCalled):
                lines.append(f"- Call the `{condition.tool_name}` tool once the task is finished.")
            elif isinstance(condition, TextContains):
                lines.append(f"- Write {condition.marker} in your final message when done.")
        if not lines:
            return ""
        return "When you are finished:\n" + "\n".join(lines)
