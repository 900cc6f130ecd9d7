class DomainException(Exception):
    pass


class BackendServiceError(DomainException):
    """Бэкенд недоступен или ответил ошибкой, можно повторить вручную"""
    pass


class OfferUnavailableError(DomainException):
    """Предложение уже забрал другой курьер или оно больше не действует"""
    def __init__(self, assignment_id: str):
        self.assignment_id = assignment_id
        super().__init__(f"Предложение {assignment_id} больше не доступно")


class InvalidTransitionError(DomainException):
    def __init__(self, entity_id: str, current: str, action: str):
        self.entity_id = entity_id
        self.current = current
        self.action = action
        super().__init__(f"Действие '{action}' недопустимо для {entity_id} в состоянии '{current}'")


class PickupBlockedError(InvalidTransitionError):
    """Ресторан ещё не отдал заказ"""
    pass


class OfferNotVisibleError(DomainException):
    def __init__(self, assignment_id: str):
        self.assignment_id = assignment_id
        super().__init__(f"Предложение {assignment_id} не отображается курьеру")


class AcceptInProgressError(DomainException):
    def __init__(self, assignment_id: str):
        self.assignment_id = assignment_id
        super().__init__(f"Принятие {assignment_id} уже выполняется")


class DelivererNotEligibleError(DomainException):
    pass


class OrderNotFoundError(DomainException):
    pass


class InvalidEventError(DomainException):
    pass
