import io
import os
import re

from setuptools import find_packages, setup


with io.open("ibimina_mfa/__init__.py", "rt", encoding="utf8") as f:
    version = re.search(r"__version__ = \"(.*?)\"", f.read()).group(1)


def fpath(name):
    return os.path.join(os.path.dirname(__file__), name)


def read(fname):
    return open(fpath(fname)).read()


def desc():
    return read("README.rst")


setup(
    name="Ibimina-MFA",
    version=version,
    license="BSD",
    description=(
        "Multi-factor authentication core for SACCO+ staff accounts:"
        " TOTP, email and WhatsApp codes, backup codes and passkeys,"
        " with trusted devices, rate limiting and an audit trail."
    ),
    long_description=desc(),
    long_description_content_type="text/x-rst",
    packages=find_packages(exclude=["tests*"]),
    entry_points={
        "flask.commands": ["mfa=ibimina_mfa.cli:mfa"],
    },
    include_package_data=True,
    zip_safe=False,
    platforms="any",
    install_requires=[
        "click>=8, <9",
        "cryptography>=3.4.8, <47",  # AES-GCM secrets, PBKDF2 backup codes
        "Flask>=2.3, <4",
        "Flask-Limiter>3, <4",
        "Flask-Login>=0.6, <0.7",
        "Flask-Mail>=0.9.1, <1.0.0",  # Email codes
        "Flask-SQLAlchemy>=3, <4",
        "itsdangerous>=2, <3",  # Signed enrollment, session and device tokens
        "limits>=3, <6",
        "marshmallow>=3.18.0, <5",
        "pyotp>=2.9.0, <3.0.0",  # TOTP
        "qrcode[pil]>=7.0.0, <9.0.0",  # Enrollment QR codes
        "SQLAlchemy>=2, <3",
        "twilio>=8.0.0, <10.0.0",  # WhatsApp codes
        "webauthn>=2, <3",  # Passkeys
        "werkzeug<4",
    ],
    extras_require={
        "redis": ["redis>=4"],
        "test": ["pytest>=7", "freezegun>=1.2"],
    },
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Environment :: Web Environment",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Security",
    ],
    python_requires=">=3.9",
)
