from __future__ import annotations
from dataclasses import dataclass, field

BUILD_REQUIREMENTS = [
    "In addition to the user's request, ensure the app includes:",
    "- A dashboard home page with summary statistics and quick navigation",
    "- Full CRUD (create, read/list, update, delete) for every data entity",
    "- Searchable list views for each entity",
    "- Form validation on required fields",
    "- Delete confirmation dialogs before destructive actions",
    "- Realistic seed data (5-8 records per entity) in prisma/seed.ts",
    "- Responsive navigation that works on mobile (choose the layout style that best fits the app)",
    "- Empty states with helpful messages when sections have no data",
]

@dataclass
class BusinessContext:
    business_context: str | None = None
    company_name: str | None = None
    state: str | None = None
    country: str | None = None
    use_cases: list[str] = field(default_factory=list)

    def lines(self) -> list[str]:
        parts = []
        if self.business_context:
            parts.append(f"Business: {self.business_context}")
        if self.company_name:
            parts.append(f"Company name: {self.company_name}")
        if self.state and self.country:
            parts.append(f"Location: {self.state}, {self.country}")
        elif self.country:
            parts.append(f"Location: {self.country}")
        if self.use_cases:
            parts.append(f"Industry focus: {', '.join(self.use_cases)}")
        return parts

def build_enriched_prompt(prompt: str, context: BusinessContext | None = None) -> str:
    sections = []
    if context is not None:
        parts = context.lines()
        if parts:
            sections.append("\n".join(["[BUSINESS CONTEXT]", *parts, "[END BUSINESS CONTEXT]"]))
    sections.append(prompt)
    sections.append("\n".join(["[BUILD REQUIREMENTS]", *BUILD_REQUIREMENTS, "[END BUILD REQUIREMENTS]"]))
    return "\n\n".join(sections)

def build_cli_args(prompt: str, model: str, use_continue: bool = False) -> list[str]:
    """Arguments appended to the agent command for one run."""
    args = ["-p", prompt]
    if use_continue:
        args.append("--continue")
    args += [
        "--output-format", "stream-json",
        "--verbose",
        "--dangerously-skip-permissions",
        "--model", model,
    ]
    return args

# Starter-template files the agent must leave alone when fixing a build
PROTECTED_FILES = [
    "src/auth.ts",
    "src/auth.config.ts",
    "src/lib/prisma.ts",
    "src/middleware.ts",
    "src/components/SessionProvider.tsx",
    "src/app/globals.css",
    "src/app/auth/page.tsx",
    "src/types/next-auth.d.ts",
]

def build_fix_prompt(build_error: str) -> str:
    return (
        f"The app failed to build with this error:\n\n{build_error}\n\n"
        "Fix the build error. Do not change any pre-built infrastructure files "
        f"({', '.join(PROTECTED_FILES)}, or any file under src/app/api/auth/). "
        "Only fix the files you created or modified."
    )
