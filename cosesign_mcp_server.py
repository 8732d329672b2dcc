#!/usr/bin/env python3
"""
An MCP server that exposes COSE_Sign1 signing and validation as tools,
and the CLI's exit-code table as a resource.
"""

import base64
import binascii
import contextlib
import io
import json
import tempfile
from pathlib import Path

from mcp.server.fastmcp import FastMCP

import cosehandler
import cosesigntool

mcp = FastMCP("CoseSignTool Server")


@mcp.resource("cosesigntool://exit-codes")
def get_exit_codes() -> str:
    """
    Returns the exit codes the cosesigntool CLI can return, by name.
    """
    return json.dumps({code.name: int(code) for code in cosesigntool.ExitCode})


@mcp.tool()
def sign_payload(
    payload_b64: str,
    pfx_path: str,
    password: str = "",
    embed: bool = False,
    content_type: str = cosehandler.DEFAULT_CONTENT_TYPE,
) -> str:
    """
    Sign a base64-encoded payload with the certificate in a .pfx file.
    Returns the base64-encoded COSE_Sign1 signature.
    """
    try:
        payload = base64.b64decode(payload_b64, validate=True)
        source = cosesigntool.PfxSource(Path(pfx_path), password or None)
        cert = cosesigntool.resolve_certificate(source)
        if isinstance(cert, cosesigntool.Failure):
            return f"Error ({cert.code.name}): {cert.message}"
        signed = cosehandler.sign(payload, cert, embed=embed, content_type=content_type)
        return base64.b64encode(signed).decode("ascii")
    except (binascii.Error, ValueError, cosehandler.CoseCertificateError) as e:
        return f"Error: {e!s}"


@mcp.tool()
def validate_signature(
    signature_b64: str,
    payload_b64: str = "",
    roots_pem: str = "",
    allow_untrusted: bool = False,
) -> str:
    """
    Validate a base64-encoded COSE_Sign1 signature. Detached signatures need the
    payload; the chain is checked against the PEM roots unless allow_untrusted is set.
    """
    tmp_paths: list[Path] = []
    try:

        def write_tmp(data: bytes, suffix: str) -> Path:
            fd, tmp_name = tempfile.mkstemp(suffix=suffix)
            path = Path(tmp_name)
            tmp_paths.append(path)
            with open(fd, "wb") as f:
                f.write(data)
            return path

        signature_path = write_tmp(base64.b64decode(signature_b64, validate=True), ".cose")
        payload_path = write_tmp(base64.b64decode(payload_b64, validate=True), ".bin") if payload_b64 else None
        roots = (write_tmp(roots_pem.encode("utf-8"), ".pem"),) if roots_pem else ()

        command = cosesigntool.ValidateCommand(
            cosesigntool.ValidateOptions(
                payload=payload_path,
                signature=signature_path,
                roots=roots,
                allow_untrusted=allow_untrusted,
            )
        )
        output = io.StringIO()
        with contextlib.redirect_stderr(output):
            result = command.run()

        if result == cosesigntool.ExitCode.Success:
            return "Signature is VALID."
        details = output.getvalue().strip()
        if details:
            return f"Signature is INVALID.\n{details}"
        return "Signature is INVALID."
    except (binascii.Error, ValueError) as e:
        return f"Error during validation: {e!s}"
    finally:
        for path in tmp_paths:
            with contextlib.suppress(OSError):
                path.unlink(missing_ok=True)


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
