from __future__ import annotations

import os
import pathlib

HERE = pathlib.Path(__file__).absolute().parent
DECLARATION_SUFFIX = ".yaml"


class Paths:
    @property
    def root(self) -> pathlib.Path:
        """Return the declarations directory.

        SESSIONHOST_ROOT overrides the variants shipped with the package.
        """
        if "SESSIONHOST_ROOT" in os.environ:
            return pathlib.Path(os.environ["SESSIONHOST_ROOT"])

        return HERE / "declarations"

    def declaration(self, name: str) -> pathlib.Path:
        return self.root / f"{name}{DECLARATION_SUFFIX}"

    @property
    def variants(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob(f"*{DECLARATION_SUFFIX}"))
