#!/usr/bin/env python3
#
# moreip/certs/acme.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight ACME v2 client (HTTP-01) for Let's Encrypt certificates."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
from typing import Callable, Optional

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

_log = logging.getLogger(__name__)

__all__ = ["ACMEClient", "ACMEError", "generate_account_key", "jwk_thumbprint"]

_HTTP_TIMEOUT = 30.0


class ACMEError(Exception):
	"""The ACME server rejected a request or an order failed."""


def _b64url(data: bytes) -> str:
	"""Base64url encode without padding."""
	return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _sha256(data: bytes) -> bytes:
	return hashlib.sha256(data).digest()


def _parse_acme_error(resp: httpx.Response) -> str:
	"""Parse ACME problem document to extract a readable message."""
	try:
		error = resp.json()
		detail = error.get("detail", "")
		error_type = error.get("type", "")
		if detail:
			return f"{detail} ({error_type})" if error_type else detail
		return resp.text
	except ValueError:
		return resp.text


def jwk_thumbprint(jwk: dict) -> str:
	"""Calculate JWK thumbprint (RFC 7638)."""
	# Canonical JSON: required members only, sorted, no whitespace
	if "kty" not in jwk:
		raise ValueError("Missing kty in JWK")
	
	if jwk["kty"] == "EC":
		canonical = {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}
	elif jwk["kty"] == "RSA":
		canonical = {"e": jwk["e"], "kty": "RSA", "n": jwk["n"]}
	else:
		raise ValueError(f"Unsupported key type: {jwk['kty']}")
	
	canonical_json = json.dumps(canonical, separators=(",", ":"), sort_keys=True)
	return _b64url(_sha256(canonical_json.encode("utf-8")))


def generate_account_key() -> ec.EllipticCurvePrivateKey:
	"""New P-256 account key."""
	return ec.generate_private_key(ec.SECP256R1())


class ACMEClient:
	"""ACME v2 client bound to one account key.

	Use as an async context manager; the HTTP client lives for the duration
	of one issuance.
	"""
	
	def __init__(
		self,
		directory_url: str,
		account_key: ec.EllipticCurvePrivateKey,
		*,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	):
		self.directory_url = directory_url
		self.transport = transport
		self.account_key = account_key
		self.directory: dict = {}
		self.nonce: Optional[str] = None
		self.account_url: Optional[str] = None
		self.http_client: Optional[httpx.AsyncClient] = None
	
	async def __aenter__(self):
		self.http_client = httpx.AsyncClient(timeout=_HTTP_TIMEOUT, transport=self.transport)
		return self
	
	async def __aexit__(self, *args):
		if self.http_client:
			await self.http_client.aclose()
			self.http_client = None
	
	def _client(self) -> httpx.AsyncClient:
		if not self.http_client:
			raise RuntimeError("HTTP client not initialized")
		return self.http_client
	
	async def _fetch_directory(self) -> None:
		resp = await self._client().get(self.directory_url)
		resp.raise_for_status()
		self.directory = resp.json()
	
	async def _get_nonce(self) -> str:
		"""Get a fresh nonce, reusing the last Replay-Nonce when available."""
		if self.nonce:
			nonce = self.nonce
			self.nonce = None
			return nonce
		
		resp = await self._client().head(self.directory["newNonce"])
		if "Replay-Nonce" not in resp.headers:
			# Some servers only answer GET
			resp = await self._client().get(self.directory["newNonce"])
		if "Replay-Nonce" not in resp.headers:
			raise ACMEError("Failed to obtain ACME nonce")
		return resp.headers["Replay-Nonce"]
	
	def jwk(self) -> dict:
		"""JWK representation of the account public key."""
		numbers = self.account_key.public_key().public_numbers()
		# P-256 coordinates are 32 bytes each
		return {
			"kty": "EC",
			"crv": "P-256",
			"x": _b64url(numbers.x.to_bytes(32, "big")),
			"y": _b64url(numbers.y.to_bytes(32, "big")),
		}
	
	def _sign_payload(self, payload: bytes) -> bytes:
		"""Sign with the account key (ES256: r || s, 32 bytes each)."""
		sig_der = self.account_key.sign(payload, ec.ECDSA(hashes.SHA256()))
		r, s = decode_dss_signature(sig_der)
		return r.to_bytes(32, "big") + s.to_bytes(32, "big")
	
	async def _signed_request(self, url: str, payload: Optional[dict]) -> httpx.Response:
		"""POST a flattened JWS; ``payload=None`` makes a POST-as-GET."""
		protected: dict = {
			"alg": "ES256",
			"nonce": await self._get_nonce(),
			"url": url,
		}
		if self.account_url:
			protected["kid"] = self.account_url
		else:
			protected["jwk"] = self.jwk()
		
		protected_b64 = _b64url(json.dumps(protected).encode("utf-8"))
		payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode("utf-8"))
		signature = self._sign_payload(f"{protected_b64}.{payload_b64}".encode("ascii"))
		
		resp = await self._client().post(
			url,
			json={
				"protected": protected_b64,
				"payload": payload_b64,
				"signature": _b64url(signature),
			},
			headers={"Content-Type": "application/jose+json"},
		)
		
		if "Replay-Nonce" in resp.headers:
			self.nonce = resp.headers["Replay-Nonce"]
		
		return resp
	
	async def register_or_fetch_account(self, email: str = "") -> str:
		"""Register the account key, or look up the existing account for it."""
		await self._fetch_directory()
		
		payload: dict = {"termsOfServiceAgreed": True}
		if email:
			payload["contact"] = [f"mailto:{email}"]
		
		resp = await self._signed_request(self.directory["newAccount"], payload)
		if resp.status_code not in (200, 201):
			raise ACMEError(f"Failed to register account: {_parse_acme_error(resp)}")
		
		self.account_url = resp.headers.get("Location")
		if not self.account_url:
			raise ACMEError("No account URL in response")
		
		_log.info("ACME account %s: %s", "registered" if resp.status_code == 201 else "found", self.account_url)
		return self.account_url
	
	async def order_certificate(self, domain: str) -> tuple[str, dict]:
		"""Create a new certificate order for a single name."""
		resp = await self._signed_request(
			self.directory["newOrder"],
			{"identifiers": [{"type": "dns", "value": domain}]},
		)
		if resp.status_code not in (200, 201):
			raise ACMEError(f"Failed to create order: {_parse_acme_error(resp)}")
		return resp.headers.get("Location", ""), resp.json()
	
	async def get_authorization(self, auth_url: str) -> dict:
		resp = await self._signed_request(auth_url, None)
		if resp.status_code != 200:
			raise ACMEError(f"Failed to get authorization: {_parse_acme_error(resp)}")
		return resp.json()
	
	def get_http01_challenge(self, authorization: dict) -> tuple[str, str, str]:
		"""Return (challenge url, token, key authorization) for HTTP-01."""
		for challenge in authorization.get("challenges", []):
			if challenge.get("type") == "http-01":
				token = challenge["token"]
				key_auth = f"{token}.{jwk_thumbprint(self.jwk())}"
				return challenge["url"], token, key_auth
		raise ACMEError("No HTTP-01 challenge offered")
	
	async def respond_to_challenge(self, challenge_url: str) -> dict:
		"""Tell the ACME server the challenge response is in place."""
		resp = await self._signed_request(challenge_url, {})
		if resp.status_code not in (200, 202):
			raise ACMEError(f"Failed to respond to challenge: {_parse_acme_error(resp)}")
		return resp.json()
	
	async def poll_order(self, order_url: str, max_attempts: int = 30, delay: float = 2.0) -> dict:
		"""Poll order status until ready/valid or failed."""
		for _ in range(max_attempts):
			resp = await self._signed_request(order_url, None)
			if resp.status_code != 200:
				raise ACMEError(f"Failed to poll order: {_parse_acme_error(resp)}")
			
			order = resp.json()
			status = order.get("status")
			if status in ("ready", "valid"):
				return order
			if status in ("invalid", "expired", "revoked"):
				raise ACMEError(f"Order failed: {status}")
			
			await asyncio.sleep(delay)
		
		raise ACMEError("Timeout waiting for order to be ready")
	
	async def finalize_order(self, order_url: str, finalize_url: str, domain: str) -> tuple[bytes, bytes]:
		"""Finalize with a fresh P-256 key and CSR; return (chain PEM, key PEM)."""
		domain_key = ec.generate_private_key(ec.SECP256R1())
		
		# SAN extension is required by Let's Encrypt
		csr = (
			x509.CertificateSigningRequestBuilder()
			.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
			.add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
			.sign(domain_key, hashes.SHA256())
		)
		
		resp = await self._signed_request(
			finalize_url,
			{"csr": _b64url(csr.public_bytes(serialization.Encoding.DER))},
		)
		if resp.status_code not in (200, 201):
			raise ACMEError(f"Failed to finalize order: {_parse_acme_error(resp)}")
		
		order = resp.json()
		if order.get("status") != "valid":
			order = await self.poll_order(order_url)
		
		cert_url = order.get("certificate")
		if not cert_url:
			raise ACMEError("No certificate URL in order")
		
		cert_resp = await self._signed_request(cert_url, None)
		if cert_resp.status_code != 200:
			raise ACMEError(f"Failed to download certificate: {_parse_acme_error(cert_resp)}")
		
		key_pem = domain_key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.PKCS8,
			encryption_algorithm=serialization.NoEncryption(),
		)
		return cert_resp.text.encode("utf-8"), key_pem
	
	async def issue(
		self,
		domain: str,
		*,
		email: str,
		publish: Callable[[str, str], None],
		withdraw: Callable[[str], None],
	) -> tuple[bytes, bytes]:
		"""Run a complete HTTP-01 issuance for ``domain``.

		``publish(token, key_auth)`` must make the key authorization reachable
		at ``/.well-known/acme-challenge/<token>``; ``withdraw(token)`` is
		always called afterwards.
		"""
		await self.register_or_fetch_account(email)
		
		order_url, order = await self.order_certificate(domain)
		_log.info("ACME order created for %s: %s", domain, order_url)
		
		for auth_url in order.get("authorizations", []):
			authorization = await self.get_authorization(auth_url)
			if authorization.get("status") == "valid":
				continue
			challenge_url, token, key_auth = self.get_http01_challenge(authorization)
			publish(token, key_auth)
			try:
				await self.respond_to_challenge(challenge_url)
				order = await self.poll_order(order_url)
			finally:
				withdraw(token)
		
		if order.get("status") not in ("ready", "valid"):
			order = await self.poll_order(order_url)
		
		return await self.finalize_order(order_url, order["finalize"], domain)
