from broker.entities.service import Service, ServiceVersion, SpecType
from broker.entities.fixture import Fixture, FixtureServiceVersion, FixtureStatus, FixtureSource
from broker.entities.deployment import Deployment, DeploymentStatus
from broker.entities.service_dependency import ServiceDependency, DependencyStatus
from broker.entities.contract import Contract, ContractStatus
from broker.entities.interaction import Interaction
from broker.entities.verification import VerificationTask, VerificationResult

__all__ = [
    "Service", "ServiceVersion", "SpecType",
    "Fixture", "FixtureServiceVersion", "FixtureStatus", "FixtureSource",
    "Deployment", "DeploymentStatus",
    "ServiceDependency", "DependencyStatus",
    "Contract", "ContractStatus",
    "Interaction", "VerificationTask", "VerificationResult",
]
