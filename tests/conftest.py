# (C) 2025 Noverse. All Rights Reserved.
# https://github.com/nohuto
# https://discord.gg/E2ybG4j9jU

import pytest

POLICY_GUID = "3c5b9f8a-1d2e-4f6a-8b9c-0d1e2f3a4b5c"

NAMESPACED_POLICY = """<?xml version="1.0" encoding="utf-8"?>
<SiPolicy xmlns="urn:schemas-microsoft-com:sipolicy" PolicyType="Base Policy" PolicyID="A244370E-44C9-4C06-B551-F6016E563076">
  <VersionEx>10.0.0.0</VersionEx>
  <PlatformID>{2E07F7E4-194C-4D20-B7C9-6F44A6C5A234}</PlatformID>
  <Rules>
    <Rule>
      <Option>Enabled:Unsigned System Integrity Policy</Option>
    </Rule>
    <Rule>
      <Option>Enabled:Audit Mode</Option>
    </Rule>
  </Rules>
  <FileRules>
    <Allow ID="ID_ALLOW_A_1" FriendlyName="Allow &amp; &lt;everything&gt;" FileName="*" />
  </FileRules>
  <Settings>
    <Setting Provider="PolicyInfo" Key="Information" ValueName="Name">
      <Value>
        <String>Fleet baseline</String>
      </Value>
    </Setting>
  </Settings>
</SiPolicy>
"""


@pytest.fixture
def simple_policy():
    return f'<SiPolicy PolicyID="{POLICY_GUID}"><Rules/></SiPolicy>'


@pytest.fixture
def namespaced_policy():
    return NAMESPACED_POLICY
