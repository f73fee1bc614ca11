import os
from typing import Optional, Dict

class SushiCredentials:
    def __init__(self):
        """Initialize SUSHI credentials with environment variables"""
        self.requestor_id = os.environ.get('SUSHI_REQUESTOR_ID')
        self.api_key = os.environ.get('SUSHI_API_KEY')

        if not self.requestor_id:
            raise ValueError("SUSHI requestor ID not found in environment variables")

    def get_query_params(self, customer_id: str, requestor_id: Optional[str] = None) -> Dict:
        """Build the authentication query parameters for one customer account"""
        params = {
            'requestor_id': requestor_id or self.requestor_id,
            'customer_id': customer_id
        }

        if self.api_key:
            params['api_key'] = self.api_key

        return params

    def apply_to_account(self, account: Dict) -> Dict:
        """Return a copy of the account with the default requestor ID filled in"""
        account = dict(account)
        if not account.get('requestor_id'):
            account['requestor_id'] = self.requestor_id
        return account
