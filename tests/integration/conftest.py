"""Fixtures for tests that go through the HTTP API"""

import pytest

PASSWORD = "correct-horse-battery"


@pytest.fixture
def register_organization(client):
    """Factory: register an organization with its first administrator"""
    def _register(name="Acme Inc", email="founder@acme.com"):
        response = client.post(
            "/api/v1/auth/register/organization",
            json={"email": email, "password": PASSWORD, "organization_name": name},
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _register


@pytest.fixture
def register_member(client):
    """Factory: register a member into an existing organization by slug"""
    def _register(organization_slug, email):
        response = client.post(
            "/api/v1/auth/register",
            json={"email": email, "password": PASSWORD, "organization_slug": organization_slug},
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _register


@pytest.fixture
def founder(register_organization):
    """Administrator of a freshly registered organization"""
    return register_organization()


@pytest.fixture
def viewer(founder, register_member):
    """Plain member holding only the default role"""
    return register_member(founder["organization"]["slug"], "viewer@acme.com")
