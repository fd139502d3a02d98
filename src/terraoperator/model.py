# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode

# Custom resource coordinates of the declared module
GROUP = "iac.terraoperator.com"
VERSION = "v1alpha1"
PLURAL = "terraforms"
KIND = "Terraform"
API_VERSION = f"{GROUP}/{VERSION}"

MODES = ("plan", "apply")


class InvalidDeclaration(ValueError):
    """Raised when a Terraform resource is missing required spec fields."""
    pass


@dataclass(frozen=True)
class ModuleSource:
    """
    A parsed module source location.

    Accepts `[git::]<url>[//<subdir>][?ref=<ref>]`, the same shape Terraform
    uses for git module sources.
    """
    url: str
    ref: Optional[str] = None
    subdir: Optional[str] = None

    @classmethod
    def parse(cls, source: str) -> ModuleSource:
        raw = source.strip()
        if raw.startswith("git::"):
            raw = raw[len("git::"):]
        if not raw:
            raise ValueError("module source is empty")

        url, sep, query = raw.partition("?")
        ref = None
        if sep:
            params = parse_qsl(query, keep_blank_values=True)
            ref = next((v for k, v in params if k == "ref"), None) or None
            rest = [(k, v) for k, v in params if k != "ref"]
            if rest:
                url = f"{url}?{urlencode(rest)}"

        # "//" after the scheme separator marks a subdirectory
        scheme_end = url.find("://")
        start = scheme_end + 3 if scheme_end != -1 else 0
        idx = url.find("//", start)
        subdir = None
        if idx != -1:
            subdir = url[idx + 2:].strip("/") or None
            url = url[:idx]

        if subdir and ".." in subdir.split("/"):
            raise ValueError(f"module subdirectory escapes the checkout: {subdir}")
        if not url:
            raise ValueError(f"module source has no repository url: {source}")
        if ref and ref.startswith("-"):
            raise ValueError(f"module ref must not start with '-': {ref}")

        return cls(url=url, ref=ref, subdir=subdir)


@dataclass(frozen=True)
class ModuleDeclaration:
    """A declared Terraform module, as read from the custom resource."""
    name: str
    namespace: str
    module_path: str
    version: str
    variables: Dict[str, str] = field(default_factory=dict)
    mode: str = "plan"
    uid: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_resource(cls, obj: Dict[str, Any]) -> ModuleDeclaration:
        """Create a declaration from the custom resource dictionary."""
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        name = metadata.get("name", "")

        module_path = spec.get("modulePath")
        version = spec.get("version")
        if not module_path:
            raise InvalidDeclaration(f"Terraform '{name}' has no spec.modulePath")
        if not version:
            raise InvalidDeclaration(f"Terraform '{name}' has no spec.version")

        mode = spec.get("mode") or "plan"
        if mode not in MODES:
            raise InvalidDeclaration(f"Terraform '{name}' has unknown spec.mode {mode!r}")

        variables = spec.get("variables") or {}
        return cls(
            name=name,
            namespace=metadata.get("namespace", "default"),
            module_path=str(module_path),
            version=str(version),
            variables={str(k): str(v) for k, v in variables.items()},
            mode=mode,
            uid=metadata.get("uid", ""),
        )
