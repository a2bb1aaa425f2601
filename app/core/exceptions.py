"""Taxonomie des erreurs du pipeline de déploiement blue/green."""


class DeploymentError(Exception):
    """Erreur de base du pipeline"""
    retryable = False


class ProvisioningError(DeploymentError):
    """La plateforme n'a pas pu allouer la capacité demandée (transitoire)"""
    retryable = True


class HealthCheckFailure(DeploymentError):
    """Un replica set n'a pas passé son health check"""


class ApprovalRejected(DeploymentError):
    pass


class ApprovalTimeout(ApprovalRejected):
    pass


class ApprovalAlreadyDecided(DeploymentError):
    pass


class DuplicateRevision(DeploymentError):
    """revision_id déjà enregistré avec une autre image"""


class NotFound(DeploymentError):
    pass


class BuildFailure(DeploymentError):
    """Le collaborateur de build n'a pas produit d'artefact"""


class RoutingConflict(DeploymentError):
    """
    Deux mutations concurrentes de l'état de routage.
    Ne doit jamais arriver sous le verrou exclusif: c'est un bug, pas une erreur récupérable.
    """


class RunInProgress(DeploymentError):
    """Un pipeline est déjà en cours pour ce service"""


class RunFinalized(DeploymentError):
    """Le run est terminé, son journal est immuable"""


class InvalidTransition(DeploymentError):
    pass


class CancellationNotAllowed(DeploymentError):
    pass
