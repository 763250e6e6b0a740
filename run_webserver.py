"""
Fingerprint Service launcher.

First run creates the bootstrap admin key (and optionally a client key),
then starts uvicorn with a single worker.
"""

import argparse

from fpservice.webserver.config import (
    HOST, PORT_HTTPS, PORT_HTTP, SCOPES, SCOPE_ADMIN, SSL_CERT_FILE, SSL_KEY_FILE, get_admin_api_key,
)
from fpservice.webserver.database import BiometricDatabase

# Scopes for the key handed to a kiosk / attendance endpoint
ENDPOINT_SCOPES = ["device:read", "scan", "enroll", "verify", "identify", "templates:read"]

RULE = "=" * 70


def first_time_setup(db: BiometricDatabase):
    """Create the bootstrap admin key and, optionally, an endpoint key."""
    print(RULE)
    print("🔐 FINGERPRINT SERVICE - FIRST RUN")
    print(RULE)
    print()

    admin_key = get_admin_api_key()
    db.ensure_api_key("admin", admin_key, [SCOPE_ADMIN])
    print("✓ Admin API key (grants every scope, store it safely):")
    print(f"  {admin_key}")
    print()

    if input("Create an endpoint key for a client application? [Y/n]: ").lower() != 'n':
        name = input("  Key name [endpoint]: ").strip() or "endpoint"
        _, key = db.create_api_key(name, ENDPOINT_SCOPES, created_by="setup")
        print(f"✓ Endpoint key '{name}' (printed once, not recoverable):")
        print(f"  {key}")

    print()
    print("✅ Keys ready")
    print(RULE)
    print()


def create_key(db: BiometricDatabase, name: str, scopes):
    unknown = sorted(set(scopes) - set(SCOPES))
    if unknown:
        print(f"✗ Unknown scopes: {', '.join(unknown)} (allowed: {', '.join(SCOPES)})")
        return
    _, key = db.create_api_key(name, scopes, created_by="cli")
    print(f"✓ API key '{name}' created with scopes {sorted(set(scopes))}:")
    print(f"  {key}")


def resolve_tls(cert, key):
    """
    Pick the certificate pair to serve with.

    Explicit --cert/--key win, then a previously generated pair under the
    data directory, then a freshly generated self-signed one.

    Returns:
        (certfile, keyfile), or (None, None) when no certificate could be made
    """
    if cert and key:
        print("🔒 TLS with the supplied certificate")
        return cert, key

    if SSL_CERT_FILE.exists() and SSL_KEY_FILE.exists():
        print("🔒 TLS with the stored self-signed certificate")
        return str(SSL_CERT_FILE), str(SSL_KEY_FILE)

    print("⚠ No certificate found, generating a self-signed one...")
    try:
        pair = generate_self_signed_cert()
    except (OSError, ValueError) as e:
        print(f"✗ Certificate generation failed: {e}")
        print("  Serving plain HTTP instead")
        return None, None
    print("✓ Self-signed certificate written; clients must trust it explicitly")
    return pair


def main():
    parser = argparse.ArgumentParser(description="Fingerprint Service")
    parser.add_argument("--host", default=HOST, help="Bind address")
    parser.add_argument("--port", type=int, help="Bind port (default depends on --ssl)")
    parser.add_argument("--ssl", action="store_true", help="Serve HTTPS / WSS")
    parser.add_argument("--cert", help="TLS certificate (PEM)")
    parser.add_argument("--key", help="TLS private key (PEM)")
    parser.add_argument("--create-key", metavar="NAME", help="Create an API key and exit")
    parser.add_argument("--scopes", nargs="+", default=ENDPOINT_SCOPES, help="Scopes for --create-key")
    parser.add_argument("--show-admin-key", action="store_true", help="Print the bootstrap admin key and exit")

    args = parser.parse_args()

    if args.show_admin_key:
        print(get_admin_api_key())
        return

    with BiometricDatabase() as db:
        if args.create_key:
            create_key(db, args.create_key, args.scopes)
            return
        if db.get_stats()['num_api_keys'] == 0:
            first_time_setup(db)

    certfile = keyfile = None
    if args.ssl:
        certfile, keyfile = resolve_tls(args.cert, args.key)
    secure = certfile is not None
    port = args.port or (PORT_HTTPS if secure else PORT_HTTP)

    import uvicorn

    scheme = 'https' if secure else 'http'
    print()
    print(RULE)
    print(f"🚀 Fingerprint Service on {scheme}://{args.host}:{port}")
    print(f"📚 Docs:   {scheme}://localhost:{port}/docs")
    print(f"📡 Events: {'wss' if secure else 'ws'}://localhost:{port}/ws?api_key=...")
    print("Press CTRL+C to stop")
    print(RULE)
    print()

    try:
        # Readers and sessions live in this process, so never more than one worker
        uvicorn.run(
            "fpservice.webserver.server:app",
            host=args.host,
            port=port,
            ssl_keyfile=keyfile,
            ssl_certfile=certfile,
            workers=1,
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down...")


def generate_self_signed_cert():
    """Write a one-year RSA-2048 certificate for localhost / 127.0.0.1 and return (certfile, keyfile)."""
    from datetime import datetime, timedelta, timezone
    from ipaddress import IPv4Address
    from cryptography import x509
    from cryptography.x509.oid import NameOID
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import rsa

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Fingerprint Service"),
        x509.NameAttribute(NameOID.COMMON_NAME, "localhost"),
    ])
    now = datetime.now(timezone.utc)

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=365))
        .add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.IPAddress(IPv4Address("127.0.0.1")),
            ]),
            critical=False,
        )
    )
    cert = builder.sign(private_key, hashes.SHA256())

    SSL_CERT_FILE.parent.mkdir(parents=True, exist_ok=True)
    SSL_CERT_FILE.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    SSL_KEY_FILE.write_bytes(private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption()
    ))
    SSL_KEY_FILE.chmod(0o600)

    return str(SSL_CERT_FILE), str(SSL_KEY_FILE)


if __name__ == "__main__":
    main()
