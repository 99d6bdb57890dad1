"""Supported frontend frameworks and their sandbox profiles.

Each framework maps to a sandbox template, the port its dev server listens
on, the entry files the agent is expected to touch, and the build directory
that must be pruned when collecting files from the sandbox.
"""

from dataclasses import dataclass, field
from enum import StrEnum


class Framework(StrEnum):
    """Frameworks the code agent can target."""

    NEXTJS = "nextjs"
    ANGULAR = "angular"
    REACT = "react"
    VUE = "vue"
    SVELTE = "svelte"


DEFAULT_FRAMEWORK = Framework.NEXTJS
DEFAULT_TEMPLATE = "zapdev"


@dataclass(frozen=True)
class FrameworkProfile:
    """Sandbox-facing details for a framework.

    Attributes:
        framework: The framework this profile describes.
        template: Sandbox template (image) name.
        port: Dev server port inside the sandbox.
        dev_command: Command that starts the dev server.
        entry_points: Files that usually hold the generated UI.
        build_dirs: Framework-specific build output directories.
    """

    framework: Framework
    template: str
    port: int
    dev_command: str
    entry_points: tuple[str, ...] = ()
    build_dirs: frozenset[str] = field(default_factory=frozenset)


FRAMEWORK_PROFILES: dict[Framework, FrameworkProfile] = {
    Framework.NEXTJS: FrameworkProfile(
        framework=Framework.NEXTJS,
        template=DEFAULT_TEMPLATE,
        port=3000,
        dev_command="npx next dev --turbopack",
        entry_points=("app/page.tsx", "pages/index.tsx"),
        build_dirs=frozenset({".next"}),
    ),
    Framework.ANGULAR: FrameworkProfile(
        framework=Framework.ANGULAR,
        template="zapdev-angular",
        port=4200,
        dev_command="npm start",
        entry_points=("src/app/app.component.ts", "src/app/app.component.html"),
        build_dirs=frozenset({".angular"}),
    ),
    Framework.REACT: FrameworkProfile(
        framework=Framework.REACT,
        template="zapdev-react",
        port=5173,
        dev_command="npm run dev",
        entry_points=("src/App.tsx", "src/main.tsx", "src/index.tsx"),
    ),
    Framework.VUE: FrameworkProfile(
        framework=Framework.VUE,
        template="zapdev-vue",
        port=5173,
        dev_command="npm run dev",
        entry_points=("src/App.vue", "src/main.ts"),
    ),
    Framework.SVELTE: FrameworkProfile(
        framework=Framework.SVELTE,
        template="zapdev-svelte",
        port=5173,
        dev_command="npm run dev",
        entry_points=("src/routes/+page.svelte", "src/App.svelte"),
        build_dirs=frozenset({".svelte-kit"}),
    ),
}

ALL_FRAMEWORK_PORTS: tuple[int, ...] = tuple(
    sorted({profile.port for profile in FRAMEWORK_PROFILES.values()})
)


def get_profile(framework: Framework | str | None) -> FrameworkProfile:
    """Return the profile for a framework, defaulting to Next.js."""
    return FRAMEWORK_PROFILES[parse_framework(framework) or DEFAULT_FRAMEWORK]


def parse_framework(value: Framework | str | None) -> Framework | None:
    """Parse a framework name leniently.

    Accepts enum members, exact names in any case, and common aliases such
    as "next.js" or "sveltekit".

    Args:
        value: Raw framework value.

    Returns:
        The matching Framework, or None if the value is empty or unknown.
    """
    if value is None:
        return None
    if isinstance(value, Framework):
        return value

    normalized = value.strip().lower().replace(" ", "")
    if not normalized:
        return None

    aliases = {
        "next": Framework.NEXTJS,
        "next.js": Framework.NEXTJS,
        "sveltekit": Framework.SVELTE,
        "vuejs": Framework.VUE,
        "vue.js": Framework.VUE,
        "reactjs": Framework.REACT,
        "react.js": Framework.REACT,
    }
    if normalized in aliases:
        return aliases[normalized]

    try:
        return Framework(normalized)
    except ValueError:
        return None
