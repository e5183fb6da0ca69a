# formulary_formulas.py
# Formulas for lazyssh and its toolchain.
from __future__ import annotations
from formulary.dsl import formula, cmd


def formulas():
    return [
        # Rust toolchain via the standalone installer tarball
        formula(
            "rust",
            url="https://static.rust-lang.org/dist/rust-1.79.0-x86_64-unknown-linux-gnu.tar.gz",
            # published alongside the tarball as rust-1.79.0-x86_64-unknown-linux-gnu.tar.gz.sha256
            sha256="",
            version="1.79.0",
            license="MIT OR Apache-2.0",
            desc="Safe, concurrent, practical language",
            homepage="https://www.rust-lang.org/",
            install=[
                cmd("./install.sh", "--prefix={prefix}", "--disable-ldconfig", name="Run installer"),
            ],
            test=[
                cmd("{bin}/cargo", "--version"),
            ],
        ),

        # sha256 stays empty until the first tagged release is published;
        # installing fails with MissingIntegrityDigest until then. cargo comes
        # from the rust build dependency, whose bin/ is put on PATH.
        formula(
            "lazyssh",
            url="https://github.com/joel-xiao/lazyssh/archive/v0.2.0.tar.gz",
            sha256="",
            license="MIT",
            desc="A cross-platform SSH management tool with TUI interface",
            homepage="https://github.com/joel-xiao/lazyssh",
            build_depends_on=["rust"],
            install=[
                cmd(
                    "cargo", "install", "--locked", "--root", "{prefix}", "--path", ".",
                    name="cargo install",
                ),
            ],
            test=[
                cmd("{bin}/lazyssh", "--help"),
            ],
        ),
    ]
