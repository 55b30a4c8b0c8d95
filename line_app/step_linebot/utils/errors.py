class LineApiError(Exception):
    """LINE API が 2xx 以外を返した"""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class DeliveryError(Exception):
    pass


class CredentialError(Exception):
    pass


class RegistrationError(Exception):
    """
    シナリオ登録の失敗. code は API の応答にそのまま載せる
        invalid_invite_code / usage_limit_reached / already_registered /
        scenario_not_found / friend_not_found
    """

    def __init__(self, code, message=None, status=400):
        super().__init__(message or code)
        self.code = code
        self.status = status


class BillingError(Exception):
    """Stripe 設定や注文状態の不備. status は API の応答コード"""

    def __init__(self, message, status=400):
        super().__init__(message)
        self.status = status
